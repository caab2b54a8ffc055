"""
Realtime Sync Simulation Script

Drives a running server with concurrent order status changes and admin
chat replies, then checks that the live views converged.
Run from project root: python scripts/simulate.py

Version: 1.0.0
"""

import argparse
import asyncio
import random
import sys
import time
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ACTIONS = 50

STATUS_FLOW = ["pending", "confirmed", "preparing", "ready", "delivered"]
ADMIN_REPLIES = [
    "Your order is being prepared.",
    "It will be at your table in 5 minutes.",
    "Sorry for the delay!",
    "The chef is plating it now.",
    "Anything else we can help with?",
]


def next_status(current: str) -> str:
    """Next workflow step, or the same status when terminal."""
    if current not in STATUS_FLOW or current == STATUS_FLOW[-1]:
        return current
    return STATUS_FLOW[STATUS_FLOW.index(current) + 1]


# =============================================================================
# ACTIONS
# =============================================================================

async def advance_order(
    client: httpx.AsyncClient,
    action_num: int,
    order: dict[str, Any],
) -> dict[str, Any]:
    """Move an order one step forward."""
    status = next_status(order["status"])
    start_time = time.time()
    try:
        response = await client.patch(
            f"{API_BASE_URL}/api/orders/{order['id']}/status",
            json={"status": status},
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)
        if response.status_code == 200:
            return {"action_num": action_num, "success": True, "time": elapsed, "mode": "status"}
        return {
            "action_num": action_num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
            "mode": "status",
        }
    except httpx.HTTPError as e:
        return {
            "action_num": action_num,
            "success": False,
            "error": str(e)[:100],
            "time": round(time.time() - start_time, 3),
            "mode": "status",
        }


async def reply_to_chat(
    client: httpx.AsyncClient,
    action_num: int,
    chat: dict[str, Any],
) -> dict[str, Any]:
    """Send an admin reply to an active chat."""
    start_time = time.time()
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/chats/{chat['id']}/messages",
            json={"content": random.choice(ADMIN_REPLIES)},
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)
        if response.status_code == 200:
            return {"action_num": action_num, "success": True, "time": elapsed, "mode": "chat"}
        return {
            "action_num": action_num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
            "mode": "chat",
        }
    except httpx.HTTPError as e:
        return {
            "action_num": action_num,
            "success": False,
            "error": str(e)[:100],
            "time": round(time.time() - start_time, 3),
            "mode": "chat",
        }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def check_convergence(client: httpx.AsyncClient) -> bool:
    """Every chat transcript must be free of duplicates and placeholders."""
    chats = (await client.get(f"{API_BASE_URL}/api/chats")).json()
    ok = True
    for chat in chats:
        ids = [m["id"] for m in chat["messages"]]
        if len(ids) != len(set(ids)):
            print(f"   ❌ Chat {chat['id']}: duplicate messages")
            ok = False
        if any(i.startswith("temp-") for i in ids):
            print(f"   ❌ Chat {chat['id']}: unconfirmed placeholder left behind")
            ok = False
        sent = [m["sent_at"] for m in chat["messages"]]
        if sent != sorted(sent):
            print(f"   ❌ Chat {chat['id']}: transcript out of order")
            ok = False
    return ok


async def run_simulation(num_actions: int = TOTAL_ACTIONS) -> dict[str, Any]:
    """Fire concurrent status changes and chat replies."""
    print("=" * 70)
    print("🔥 REALTIME SYNC SIMULATION")
    print("=" * 70)
    print(f"📋 Total Actions: {num_actions}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient() as client:
        orders = (await client.get(f"{API_BASE_URL}/api/orders")).json()
        chats = (await client.get(f"{API_BASE_URL}/api/chats", params={"status": "active"})).json()
        if not orders:
            print("\n❌ No orders to work with. Start the server in development mode.")
            return {"total": 0, "successful": 0, "failed": 0}

        for order in orders:
            await client.post(f"{API_BASE_URL}/api/tracking/{order['id']}")

        tasks = []
        for i in range(num_actions):
            if chats and i % 2:
                tasks.append(reply_to_chat(client, i + 1, random.choice(chats)))
            else:
                tasks.append(advance_order(client, i + 1, random.choice(orders)))
        results = await asyncio.gather(*tasks)

        converged = await check_convergence(client)
        notices = (await client.get(f"{API_BASE_URL}/api/notifications")).json()

        for order in orders:
            await client.delete(f"{API_BASE_URL}/api/tracking/{order['id']}")

    total_time = round(time.time() - start_time, 2)
    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Successful Actions: {len(successful)}/{num_actions}")
    print(f"❌ Failed Actions: {len(failed)}/{num_actions}")
    print(f"⏱️  Total Time: {total_time}s")
    print(f"🔔 Notices: {len(notices)}")
    print(f"🔁 Transcripts converged: {'yes' if converged else 'NO'}")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        print(f"\n📈 Average Response: {avg_time}s")

    if failed:
        # Forward-only workflow rejects some of the random bumps
        print("\n⚠️  Failed Action Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Action #{f['action_num']} [{f['mode']}]: {f.get('error', 'Unknown error')}")

    print("=" * 70)
    return {
        "total": num_actions,
        "successful": len(successful),
        "failed": len(failed),
        "converged": converged,
        "total_time": total_time,
    }


async def test_single_flows() -> bool:
    """Check the server is up before the simulation."""
    print("\n1️⃣ Health Check...")
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"   ❌ Failed: {e}")
            return False
    if response.status_code != 200:
        print(f"   ❌ Failed: {response.text}")
        return False
    data = response.json()
    print(f"   ✅ Status: {data.get('status')} (backend: {data.get('provider')})")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Realtime Sync Simulation Script")
    parser.add_argument("--actions", type=int, default=TOTAL_ACTIONS, help="Number of actions")
    parser.add_argument("--skip-tests", action="store_true", help="Skip the health check")
    args = parser.parse_args()

    if not args.skip_tests and not asyncio.run(test_single_flows()):
        print("\n❌ Pre-flight check failed. Is the server running?")
        sys.exit(1)

    summary = asyncio.run(run_simulation(num_actions=args.actions))
    sys.exit(0 if summary.get("converged", False) else 1)
