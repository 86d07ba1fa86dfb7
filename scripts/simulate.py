"""
Checkout Simulation Script

Fires many concurrent checkouts at a local API running in development
mode (mock gateway) and follows each payment session to its end.
Run from project root: python scripts/simulate.py

Customer behaviours mixed into the run:
    - patient: waits for the provider to confirm
    - override: taps "I confirmed it on my phone" once it is offered
    - quitter: closes the payment screen while waiting
"""

import asyncio
import sys
import os
import random
import time
import argparse
from datetime import datetime
from typing import Any

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_CHECKOUTS = 30
STATUS_POLL_SECONDS = 1.0
MAX_FOLLOW_SECONDS = 90.0

# Sample data for random checkouts
FIRST_NAMES = ["Grace", "Patrick", "Ruth", "Fiston", "Nadine", "Cedric", "Merveille", "Junior", "Esther", "Blaise"]
LAST_NAMES = ["Mbuyi", "Kabila", "Tshisekedi", "Ilunga", "Kasongo", "Mutombo", "Lukaku", "Ngoy", "Kalala", "Banza"]
COMMUNES = ["Gombe", "Limete", "Ngaliema", "Bandalungwa", "Kintambo", "Lingwala", "Barumbu"]
RESTAURANTS = [
    {"restaurant_id": "resto_001", "restaurant_name": "Chez Maman Colonel"},
    {"restaurant_id": "resto_002", "restaurant_name": "Le Grill de Gombe"},
    {"restaurant_id": "resto_003", "restaurant_name": "Pili Pili Express"},
]
MENU_ITEMS = [
    {"id": "dish_01", "name": "Poulet Mayo", "unit_price": 12000},
    {"id": "dish_02", "name": "Liboke de Poisson", "unit_price": 15000},
    {"id": "dish_03", "name": "Pondu", "unit_price": 6000},
    {"id": "dish_04", "name": "Makayabu", "unit_price": 9000},
    {"id": "dish_05", "name": "Chikwangue", "unit_price": 2000},
    {"id": "dish_06", "name": "Jus de Bissap", "unit_price": 2500},
]
OPERATORS = ["airtel", "mpesa", "orange"]
BEHAVIOURS = ["patient", "patient", "patient", "override", "quitter"]


def generate_checkout_payload() -> dict[str, Any]:
    """Generate a random basket with a mobile-money payment."""
    first = random.choice(FIRST_NAMES)
    last = random.choice(LAST_NAMES)
    items = []
    for _ in range(random.randint(1, 4)):
        item = random.choice(MENU_ITEMS).copy()
        item["quantity"] = random.randint(1, 3)
        items.append(item)

    return {
        **random.choice(RESTAURANTS),
        "customer_name": f"{first} {last}",
        "delivery_address": f"{random.randint(1, 250)} Avenue {random.choice(COMMUNES)}",
        "city": "Kinshasa",
        "items": items,
        "delivery_fee": 3000,
        "payment": {
            "operator": random.choice(OPERATORS),
            "phone_number": f"08{random.randint(1, 9)} {random.randint(100, 999)} {random.randint(1000, 9999)}",
            "country_code": "DRC",
        },
    }


async def follow_session(
    client: httpx.AsyncClient,
    session_id: str,
    behaviour: str,
) -> dict[str, Any]:
    """Poll a payment session until it settles, acting like the customer."""
    deadline = time.time() + MAX_FOLLOW_SECONDS

    while time.time() < deadline:
        response = await client.get(f"{API_BASE_URL}/api/checkout/{session_id}")
        response.raise_for_status()
        session = response.json()

        if session["finalized"] or session["cancelled"] or session["state"] == "error":
            return session

        if session["state"] == "waiting_confirmation":
            if behaviour == "quitter" and random.random() < 0.3:
                response = await client.delete(f"{API_BASE_URL}/api/checkout/{session_id}")
                return response.json()
            if behaviour == "override" and session["manual_override_eligible"]:
                await client.post(
                    f"{API_BASE_URL}/api/checkout/{session_id}/manual-confirmation"
                )

        await asyncio.sleep(STATUS_POLL_SECONDS)

    return {"state": "unknown", "error_message": "Gave up following the session"}


async def run_checkout(client: httpx.AsyncClient, checkout_num: int) -> dict[str, Any]:
    """Start one checkout and follow it to its end."""
    payload = generate_checkout_payload()
    behaviour = random.choice(BEHAVIOURS)
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/checkout",
            json=payload,
            timeout=30.0
        )
        if response.status_code != 200:
            return {
                "checkout_num": checkout_num,
                "behaviour": behaviour,
                "outcome": "rejected",
                "error": response.text[:100],
                "time": round(time.time() - start_time, 3),
            }

        session = await follow_session(client, response.json()["session_id"], behaviour)
        if session.get("cancelled"):
            outcome = "cancelled"
        elif session.get("finalized"):
            outcome = session.get("verification_status") or "paid"
        else:
            outcome = session.get("state", "unknown")

        return {
            "checkout_num": checkout_num,
            "behaviour": behaviour,
            "outcome": outcome,
            "amount": session.get("amount"),
            "error": session.get("error_message"),
            "time": round(time.time() - start_time, 3),
        }
    except httpx.HTTPError as e:
        return {
            "checkout_num": checkout_num,
            "behaviour": behaviour,
            "outcome": "transport_error",
            "error": str(e)[:100],
            "time": round(time.time() - start_time, 3),
        }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_checkouts: int = TOTAL_CHECKOUTS) -> dict[str, Any]:
    """Run the concurrent checkout simulation."""
    print("=" * 70)
    print("🔥 CHECKOUT SIMULATION - CONCURRENT PAYMENT SESSIONS")
    print("=" * 70)
    print(f"📋 Total Checkouts: {num_checkouts}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.get(f"{API_BASE_URL}/health")
        if response.status_code != 200:
            print(f"\n❌ Health check failed: {response.text}")
            return {"total": num_checkouts, "results": []}
        print(f"\n✅ API {response.json().get('status')}, firing checkouts...\n")

        tasks = [run_checkout(client, i + 1) for i in range(num_checkouts)]
        results = await asyncio.gather(*tasks)

    total_time = round(time.time() - start_time, 2)

    outcomes: dict[str, int] = {}
    for r in results:
        outcomes[r["outcome"]] = outcomes.get(r["outcome"], 0) + 1

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    for outcome, count in sorted(outcomes.items()):
        print(f"   {outcome:<16} {count}/{num_checkouts}")
    print(f"\n⏱️  Total Time: {total_time}s")

    settled = [r for r in results if r["outcome"] in ("paid", "manual_check")]
    if settled:
        avg_time = round(sum(r["time"] for r in settled) / len(settled), 3)
        revenue = sum(r.get("amount") or 0 for r in settled)
        print(f"   Average time to order: {avg_time}s")
        print(f"   💰 Total Revenue: {revenue:,.0f} CDF")

    errors = [r for r in results if r.get("error") and r["outcome"] not in ("paid", "manual_check")]
    if errors:
        print(f"\n⚠️  Failure Details (showing first 5):")
        for r in errors[:5]:
            print(f"   Checkout #{r['checkout_num']} [{r['behaviour']}]: {r['error']}")

    print("\n" + "=" * 70)
    print(f"🔍 Orders needing reconciliation: {API_BASE_URL}/api/orders?payment_status=manual_check")
    print("=" * 70)

    return {
        "total": num_checkouts,
        "outcomes": outcomes,
        "total_time": total_time,
        "results": results,
    }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Checkout Simulation Script")
    parser.add_argument("--checkouts", type=int, default=TOTAL_CHECKOUTS, help="Number of checkouts")
    parser.add_argument("--url", default=API_BASE_URL, help="API base URL")
    args = parser.parse_args()

    API_BASE_URL = args.url
    asyncio.run(run_simulation(args.checkouts))
