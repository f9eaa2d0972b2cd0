#!/usr/bin/env python3
"""
GatePass load client (async): an oversell probe.

Fires concurrent checkouts against one ticket tier and settles them through
MockPay, the way a browser would:
  1) POST /api/checkout  (event, tier, quantity, buyer) -> {payment_ref, ...}
  2) POST /mockpay/{ref}/emit  (t=succeeded|failed|canceled)
  3) Poll GET /api/payments/{ref}/status until it is no longer PENDING

Afterwards it reads the tier's inventory and compares sold seats against
capacity.

Usage:
  python -m gatepass.load_client --event EVENT_ID --tier TIER_ID \
                                 --total 200 --concurrency 50

Notes:
- This targets the MockPay flow (PAYMENT_GATEWAY=mock).
"""

import argparse
import asyncio
import random
import string
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx


def _rand_buyer() -> Dict[str, str]:
    name = "".join(random.choices(string.ascii_lowercase, k=8))
    phone = "9" + "".join(random.choices(string.digits, k=9))
    return {"name": name.title(), "phone": phone}


@dataclass
class Result:
    ok: bool
    outcome: str  # COMPLETED/FAILED/SOLD_OUT/TIMEOUT/ERROR
    quantity: int = 1
    t_checkout: float = 0.0
    t_observed: float = 0.0  # time until non-PENDING observed
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def seats(self, outcome: str) -> int:
        return sum(r.quantity for r in self.results if r.outcome == outcome)

    def print(self, elapsed_s: float):
        lat = sorted(r.t_observed for r in self.results if r.t_observed > 0)
        p50 = lat[len(lat) // 2] if lat else 0.0
        p99 = lat[int(0.99 * (len(lat) - 1))] if lat else 0.0
        print("\n=== Load Summary ===")
        print(
            f"Total: {len(self.results)}   "
            f"COMPLETED: {self.count('COMPLETED')}   "
            f"FAILED: {self.count('FAILED')}   "
            f"SOLD_OUT: {self.count('SOLD_OUT')}   "
            f"TIMEOUT: {self.count('TIMEOUT')}   "
            f"ERROR: {self.count('ERROR')}"
        )
        print(f"Settlement latency: p50 {p50:.3f}s   p99 {p99:.3f}s")
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {len(self.results) / elapsed_s:.1f} ops/s"
        )


async def one_booking(
    client: httpx.AsyncClient,
    base: str,
    event_id: str,
    tier_id: str,
    quantity: int,
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="ERROR", quantity=quantity)

    # 1) checkout
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/checkout",
            json={"event_id": event_id, "tier_id": tier_id,
                  "quantity": quantity, **_rand_buyer()},
            timeout=30.0,
        )
        if resp.status_code == 409:
            r.ok, r.outcome = True, "SOLD_OUT"
            return r
        resp.raise_for_status()
        ref = resp.json()["payment_ref"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"checkout: {e}"
        return r
    r.t_checkout = time.perf_counter() - t0

    # 2) click the button on the MockPay page
    try:
        resp = await client.post(
            f"{base}/mockpay/{ref}/emit",
            data={"t": emit_kind},
            follow_redirects=False,
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r

    # 3) poll until non-PENDING or timeout
    t2 = time.perf_counter()
    deadline = t2 + poll_timeout_s
    status = "PENDING"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(f"{base}/api/payments/{ref}/status",
                                 timeout=10.0)
            if g.status_code == 200:
                status = g.json().get("payment_status", status)
                if status in ("COMPLETED", "FAILED"):
                    break
            await asyncio.sleep(poll_interval_s)
    except httpx.HTTPError as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t2
    r.ok = True
    r.outcome = status if status in ("COMPLETED", "FAILED") else "TIMEOUT"
    return r


async def run_load(
    base: str,
    event_id: str,
    tier_id: str,
    total: int,
    concurrency: int,
    quantity: int,
    fail_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "GatePassLoad/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                emit_kind = (
                    "failed" if random.random() < fail_rate else "succeeded"
                )
                res = await one_booking(
                    client, base, event_id, tier_id, quantity, emit_kind,
                    poll_interval_s, poll_timeout_s,
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


async def read_tier(base: str, event_id: str, tier_id: str) -> Dict:
    async with httpx.AsyncClient() as client:
        resp = await client.get(f"{base}/api/events/{event_id}", timeout=10.0)
        resp.raise_for_status()
    for t in resp.json()["tiers"]:
        if t["id"] == tier_id:
            return t
    raise KeyError(tier_id)


def main():
    ap = argparse.ArgumentParser(description="GatePass oversell probe")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--event", required=True, help="Event id")
    ap.add_argument("--tier", required=True, help="Ticket tier id")
    ap.add_argument("--total", type=int, default=100,
                    help="Total checkouts to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--quantity", type=int, default=1,
                    help="Seats per checkout")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments to fail")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for non-PENDING")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        event_id=args.event,
        tier_id=args.tier,
        total=args.total,
        concurrency=args.concurrency,
        quantity=args.quantity,
        fail_rate=args.fail_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)

    tier = asyncio.run(read_tier(args.base, args.event, args.tier))
    inv = tier.get("inventory") or {}
    sold, capacity = inv.get("sold"), tier["total_seats"]
    print(f"Tier {args.tier}: sold {sold} of {capacity} "
          f"(this run completed {stats.seats('COMPLETED')} seats)")
    if sold is not None and sold > capacity:
        print("OVERSOLD")
        sys.exit(1)


if __name__ == "__main__":
    main()
