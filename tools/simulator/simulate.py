#!/usr/bin/env python3
"""MeshMap traffic simulator.

Advertises a set of repeaters, then sends coverage samples from mobile
clients wandering around them.

Usage:
    # 5 clients around Seattle for 10 minutes, 12 repeaters
    python -m tools.simulator.simulate --server http://localhost:8000 --clients 5 --duration 600

    # Stress test: 50 clients, max rate, consolidate everything at the end
    python -m tools.simulator.simulate --clients 50 --samples-per-minute 60 --consolidate

    # Specific location
    python -m tools.simulator.simulate --center 45.52,-122.68
"""

from __future__ import annotations

import argparse
import asyncio
import json
import math
import random
import time
from dataclasses import dataclass

import httpx


@dataclass
class SimRepeater:
    id: str
    name: str
    lat: float
    lon: float
    elev: float


@dataclass
class SimClient:
    lat: float
    lon: float
    bearing: float
    speed_mps: float
    name: str = ""
    samples_sent: int = 0
    errors: int = 0


def scatter(center: tuple[float, float], radius_km: float) -> tuple[float, float]:
    """Random point within radius_km of center."""
    center_lat, center_lon = center
    angle = random.uniform(0, 2 * math.pi)
    dist_km = random.uniform(0, radius_km)
    lat = center_lat + (dist_km / 111.0) * math.cos(angle)
    lon = center_lon + (dist_km / (111.0 * math.cos(math.radians(center_lat)))) * math.sin(angle)
    return lat, lon


def make_repeaters(count: int, center: tuple[float, float], radius_km: float) -> list[SimRepeater]:
    repeaters = []
    for i in range(count):
        lat, lon = scatter(center, radius_km)
        # A few ids are reused on purpose, as real installs do.
        rid = f"{random.randrange(0, max(count - 2, 1)):02x}"
        repeaters.append(SimRepeater(
            id=rid,
            name=f"sim-rptr-{i}",
            lat=lat,
            lon=lon,
            elev=random.choice([0, 5, 30, 120, 400]),
        ))
    return repeaters


def make_sample_payload(client: SimClient, repeaters: list[SimRepeater], range_km: float) -> dict:
    """One observation: repeaters in range may relay, the nearest may echo."""
    in_range = []
    for r in repeaters:
        dlat = (r.lat - client.lat) * 111.0
        dlon = (r.lon - client.lon) * 111.0 * math.cos(math.radians(client.lat))
        effective_range = range_km + math.sqrt(r.elev) * 0.3
        if math.hypot(dlat, dlon) <= effective_range and random.random() < 0.7:
            in_range.append(r.id)

    payload = {
        "lat": round(client.lat, 6),
        "lon": round(client.lon, 6),
        "path": in_range,
        "observed": bool(in_range) and random.random() < 0.6,
    }
    if in_range:
        payload["snr"] = round(random.uniform(-15, 12), 1)
        payload["rssi"] = random.randint(-125, -60)
    if client.name:
        payload["sender"] = client.name
    return payload


def move_client(client: SimClient, dt_seconds: float) -> None:
    """Move a client along its current bearing, with random turns."""
    client.bearing = (client.bearing + random.uniform(-20, 20)) % 360
    client.speed_mps = max(1.0, min(25.0, client.speed_mps + random.uniform(-1, 1)))

    distance_m = client.speed_mps * dt_seconds
    bearing_rad = math.radians(client.bearing)

    # Approximate: 1 degree latitude ~ 111,000 m
    dlat = (distance_m * math.cos(bearing_rad)) / 111_000
    dlon = (distance_m * math.sin(bearing_rad)) / (111_000 * math.cos(math.radians(client.lat)))

    client.lat += dlat
    client.lon += dlon


async def advertise(http: httpx.AsyncClient, server_url: str, repeaters: list[SimRepeater]) -> int:
    sent = 0
    now_ms = int(time.time() * 1000)
    for r in repeaters:
        resp = await http.post(
            f"{server_url}/api/v1/repeaters",
            content=json.dumps({"id": r.id, "name": r.name, "lat": r.lat, "lon": r.lon,
                                "elev": r.elev, "time": now_ms}),
            headers={"content-type": "application/json"},
        )
        if resp.status_code == 200:
            sent += 1
    return sent


async def run_client(
    http: httpx.AsyncClient,
    client: SimClient,
    repeaters: list[SimRepeater],
    server_url: str,
    samples_per_minute: float,
    duration_seconds: float,
    range_km: float,
) -> None:
    """Simulate a single client sending samples."""
    interval = 60.0 / samples_per_minute
    end_time = time.monotonic() + duration_seconds

    while time.monotonic() < end_time:
        move_client(client, interval)
        payload = make_sample_payload(client, repeaters, range_km)

        try:
            resp = await http.post(
                f"{server_url}/api/v1/samples",
                content=json.dumps(payload),
                headers={"content-type": "application/json"},
            )
            if resp.status_code == 200:
                client.samples_sent += 1
            else:
                client.errors += 1
        except httpx.RequestError:
            client.errors += 1

        heard = random.choice(repeaters) if repeaters and random.random() < 0.2 else None
        if heard is not None:
            try:
                await http.post(
                    f"{server_url}/api/v1/rx-samples",
                    content=json.dumps({"lat": round(client.lat, 6), "lon": round(client.lon, 6),
                                        "repeater": heard.id, "rssi": random.randint(-125, -60)}),
                    headers={"content-type": "application/json"},
                )
            except httpx.RequestError:
                client.errors += 1

        await asyncio.sleep(interval)


async def run_simulation(args: argparse.Namespace) -> None:
    """Run the full simulation."""
    repeaters = make_repeaters(args.repeaters, args.center, args.radius_km)
    clients = []
    for i in range(args.clients):
        lat, lon = scatter(args.center, args.radius_km)
        clients.append(SimClient(
            lat=lat,
            lon=lon,
            bearing=random.uniform(0, 360),
            speed_mps=random.uniform(1, 15),
            name=f"sim-{i}",
        ))

    print(f"Starting simulation: {args.clients} clients, {args.samples_per_minute} samples/min each")
    print(f"  Center: {args.center[0]:.4f}, {args.center[1]:.4f}")
    print(f"  Radius: {args.radius_km} km, repeaters: {args.repeaters}")
    print(f"  Duration: {args.duration}s")
    print(f"  Server: {args.server}")
    print()

    start = time.monotonic()

    async with httpx.AsyncClient(timeout=10.0) as http:
        advertised = await advertise(http, args.server, repeaters)
        print(f"Advertised {advertised}/{len(repeaters)} repeaters")

        tasks = [
            run_client(http, c, repeaters, args.server, args.samples_per_minute,
                       args.duration, args.range_km)
            for c in clients
        ]
        await asyncio.gather(*tasks)

        elapsed = time.monotonic() - start
        total = sum(c.samples_sent for c in clients)
        errors = sum(c.errors for c in clients)

        print(f"\nSimulation complete in {elapsed:.1f}s")
        print(f"  Total samples sent: {total}")
        print(f"  Total errors: {errors}")
        print(f"  Throughput: {total / elapsed:.1f} samples/sec")

        if args.consolidate:
            # max_age is in days; a tiny value sweeps up everything just sent.
            resp = await http.post(f"{args.server}/api/v1/consolidate", params={"max_age": 1e-9})
            print(f"\nConsolidation: {resp.status_code} {resp.text}")

        try:
            resp = await http.get(f"{args.server}/api/v1/graph")
            if resp.status_code == 200:
                graph = resp.json()
                print(f"\nGraph: {len(graph['edges'])} edges")
                for rank, (rid, count) in enumerate(graph["top_repeaters"][:10], start=1):
                    print(f"  {rank:2d}. {rid}  {count}")
            resp = await http.get(f"{args.server}/api/v1/senders")
            if resp.status_code == 200:
                print("\nTop senders:")
                for s in resp.json()["senders"][:5]:
                    print(f"  {s['name']}  {s['tiles']}")
        except httpx.RequestError:
            pass


def main():
    parser = argparse.ArgumentParser(description="MeshMap coverage traffic simulator")
    parser.add_argument("--server", default="http://localhost:8000", help="Server URL")
    parser.add_argument("--clients", type=int, default=5, help="Number of simulated clients")
    parser.add_argument("--repeaters", type=int, default=12, help="Number of simulated repeaters")
    parser.add_argument("--duration", type=int, default=60, help="Simulation duration in seconds")
    parser.add_argument("--samples-per-minute", type=float, default=10, help="Samples per minute per client")
    parser.add_argument("--center", type=str, default="47.6062,-122.3321",
                        help="Center lat,lon (default: Seattle)")
    parser.add_argument("--radius-km", type=float, default=8.0, help="Scatter radius in km")
    parser.add_argument("--range-km", type=float, default=3.0, help="Nominal repeater range in km")
    parser.add_argument("--consolidate", action="store_true",
                        help="Consolidate all samples when done")

    args = parser.parse_args()

    lat, lon = args.center.split(",")
    args.center = (float(lat), float(lon))

    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
