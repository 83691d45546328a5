"""
Insert the built-in plans (Basic, Professional, Enterprise) that are missing.

Idempotent: plans are matched by name, existing ones are left untouched.
Optionally links every unlinked active plan to a gateway plan.

Usage (from backend/):
  python -m scripts.seed_plans
  python -m scripts.seed_plans --link-gateway
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database


async def seed(link_gateway: bool = False) -> int:
    from services.plan_registry import plan_registry

    created = await plan_registry.seed_defaults()
    if link_gateway:
        result = await plan_registry.list_plans(status="active", limit=100)
        for plan in result["items"]:
            if not plan.external_plan_id:
                linked = await plan_registry.ensure_gateway_plan(plan)
                print(f"Linked {linked.name} -> {linked.external_plan_id}")
    return created


def main():
    parser = argparse.ArgumentParser(description="Seed default subscription plans")
    parser.add_argument("--link-gateway", action="store_true", help="Create gateway plans for unlinked active plans")
    args = parser.parse_args()

    async def _():
        await database.connect()
        try:
            n = await seed(link_gateway=args.link_gateway)
            print(f"Created {n} plan(s)")
            return 0
        finally:
            await database.close()

    return asyncio.run(_())


if __name__ == "__main__":
    sys.exit(main())
