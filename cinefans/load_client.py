#!/usr/bin/env python3
"""
CineFans load client (async)

Simulates buyers racing for the same seats, then paying through MockPay:
  1) GET  /api/events/{id}            -> seat map
  2) POST /api/reservations {seat_id} -> 201 (hold) or 409 (lost the race)
  3) POST /api/checkout               -> {order_id, redirect_url}
  4) POST /mockpay/{psid}/emit (t=approved|rejected|cancelled)
  5) Poll GET /api/orders/{order_id} until status != pending (or timeout)

Buyers authenticate with the dev tokens written by `seed.py --tokens`.

Usage:
  python -m cinefans.load_client --base http://localhost:8000 \
      --tokens tokens.json --total 200 --concurrency 50 --hot-seats 20

Notes:
- Keep server workers=1 with SQLite to avoid lock contention artifacts.
- With --hot-seats smaller than --total most buyers lose the race; that
  is the point: exactly one hold per seat must win.
"""

import asyncio
import json
import random
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx

DONE = ("paid", "cancelled")


@dataclass
class Result:
    ok: bool
    seat_id: str
    outcome: str  # PAID/CANCELLED/LOST/TIMEOUT/ERROR
    t_reserve: float = 0.0
    t_checkout: float = 0.0
    t_emit: float = 0.0
    t_observed: float = 0.0  # time until non-pending observed
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def double_booked(self) -> List[str]:
        seen: Dict[str, int] = {}
        for r in self.results:
            if r.outcome == "PAID":
                seen[r.seat_id] = seen.get(r.seat_id, 0) + 1
        return [s for s, n in seen.items() if n > 1]

    def summary(self) -> Dict[str, float]:
        lat = [r.t_observed for r in self.results if r.t_observed > 0]
        res = [r.t_reserve for r in self.results if r.t_reserve > 0]

        def pct(values, p):
            if not values:
                return 0.0
            x = sorted(values)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "paid": self.count("PAID"),
            "cancelled": self.count("CANCELLED"),
            "lost": self.count("LOST"),
            "timeout": self.count("TIMEOUT"),
            "error": self.count("ERROR"),
            "reserve_p50_s": pct(res, 50),
            "reserve_p99_s": pct(res, 99),
            "p50_s": pct(lat, 50),
            "p90_s": pct(lat, 90),
            "p99_s": pct(lat, 99),
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   PAID: {int(s['paid'])}   "
            f"CANCELLED: {int(s['cancelled'])}   LOST RACE: {int(s['lost'])}"
            f"   TIMEOUT: {int(s['timeout'])}   ERROR: {int(s['error'])}"
        )
        print(
            f"Reserve latency: p50 {s['reserve_p50_s']:.3f}s   "
            f"p99 {s['reserve_p99_s']:.3f}s"
        )
        print(
            f"Order resolution: p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} buyers/s"
        )
        dup = self.double_booked()
        if dup:
            print(f"!!! seats paid more than once: {dup}")
        else:
            print("No seat was sold twice.")


def _psid_from(redirect_url: str) -> Optional[str]:
    # redirect_url ends with "/mockpay/{psid}"
    parts = redirect_url.rstrip("/").split("/")
    if len(parts) >= 2 and parts[-2] == "mockpay":
        return parts[-1]
    return None


async def one_buyer(
    client: httpx.AsyncClient,
    base: str,
    token: str,
    seat_id: str,
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, seat_id=seat_id, outcome="ERROR")
    headers = {"Authorization": f"Bearer {token}"}

    # 1) hold the seat
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/reservations", json={"seat_id": seat_id},
            headers=headers, timeout=30.0,
        )
    except httpx.HTTPError as e:
        r.err = f"reserve: {e}"
        return r
    r.t_reserve = time.perf_counter() - t0
    if resp.status_code in (403, 409):
        r.ok = True
        r.outcome = "LOST"
        return r
    if resp.status_code >= 400:
        r.err = f"reserve HTTP {resp.status_code}"
        return r
    order_id = resp.json()["order_id"]

    # 2) checkout
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/checkout", json={"order_id": order_id},
            headers=headers, timeout=30.0,
        )
        resp.raise_for_status()
        psid = _psid_from(resp.json()["redirect_url"])
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"checkout: {e}"
        return r
    if not psid:
        r.err = "bad redirect_url"
        return r
    r.t_checkout = time.perf_counter() - t1

    # 3) emit outcome (the buyer pressing a MockPay button)
    t2 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{psid}/emit",
            data={"t": emit_kind},
            follow_redirects=True,
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t2

    # 4) poll order status
    t3 = time.perf_counter()
    deadline = t3 + poll_timeout_s
    status = "pending"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(
                f"{base}/api/orders/{order_id}", headers=headers,
                timeout=10.0,
            )
            if g.status_code == 200:
                status = g.json().get("status", status)
                if status in DONE:
                    break
            await asyncio.sleep(poll_interval_s)
    except httpx.HTTPError as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t3
    r.ok = True
    r.outcome = status.upper() if status in DONE else "TIMEOUT"
    return r


async def pick_seats(client: httpx.AsyncClient, base: str,
                     event_id: Optional[str], hot: int) -> List[str]:
    if event_id is None:
        events = (await client.get(f"{base}/api/events")).json()["items"]
        if not events:
            raise SystemExit("no upcoming events; run seed.py first")
        event_id = events[0]["id"]
    event = (await client.get(f"{base}/api/events/{event_id}")).json()
    rank = {t["name"]: t["priority"] for t in event.get("tiers", [])}
    free = [s for s in event["seats"] if s["status"] == "free"]
    # least exclusive tier first: every buyer may sit there
    free.sort(key=lambda s: -rank.get(s["tier"], 0))
    return [s["id"] for s in free[:max(1, hot)]]


async def run_load(
    base: str,
    tokens: List[str],
    event_id: Optional[str],
    total: int,
    concurrency: int,
    hot_seats: int,
    fail_rate: float,
    cancel_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "CineFansLoad/1.0"}
    ) as client:
        seats = await pick_seats(client, base, event_id, hot_seats)

        async def worker(n: int):
            async with sem:
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "rejected"
                elif rnd < fail_rate + cancel_rate:
                    emit_kind = "cancelled"
                else:
                    emit_kind = "approved"

                res = await one_buyer(
                    client, base, tokens[n % len(tokens)],
                    random.choice(seats), emit_kind,
                    poll_interval_s, poll_timeout_s,
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="CineFans load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--tokens", default="tokens.json",
                    help="JSON list of session tokens (from seed.py)")
    ap.add_argument("--event", default=None,
                    help="Event id (default: next upcoming event)")
    ap.add_argument("--total", type=int, default=100,
                    help="Total buyers to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--hot-seats", type=int, default=10,
                    help="How many seats the buyers fight over")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments to reject")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of payments to cancel")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for non-pending")
    args = ap.parse_args()

    with open(args.tokens) as f:
        tokens = [t["token"] if isinstance(t, dict) else t
                  for t in json.load(f)]
    if not tokens:
        raise SystemExit(f"no tokens in {args.tokens}")

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        tokens=tokens,
        event_id=args.event,
        total=args.total,
        concurrency=args.concurrency,
        hot_seats=args.hot_seats,
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
