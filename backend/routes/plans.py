"""Plan Routes - subscription plan catalogue.

Endpoints:
- GET /api/subscriptions/plans - List plans (filters + pagination)
- GET /api/subscriptions/plans/search?q= - Search active plans
- GET /api/subscriptions/plans/stats - Plan counts by type (admin)
- GET /api/subscriptions/plans/{plan_id} - Get one plan
- POST /api/subscriptions/plans - Create plan (admin)
- PUT /api/subscriptions/plans/{plan_id} - Update plan (admin)
- DELETE /api/subscriptions/plans/{plan_id} - Delete plan (admin)

Plan bodies are validated by the plan registry so malformed input answers
400 with an error_code rather than a framework 422.
"""
from fastapi import APIRouter, Body, Depends, status
from typing import Optional, Dict, Any
from services.plan_registry import plan_registry
from middleware import require_admin
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscriptions/plans", tags=["plans"])


@router.get("")
async def list_plans(
    plan_type: Optional[str] = None,
    billing_cycle: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
):
    return await plan_registry.list_plans(
        plan_type=plan_type,
        billing_cycle=billing_cycle,
        status=status,
        search=search,
        page=page,
        limit=limit,
    )


@router.get("/search")
async def search_plans(q: str = ""):
    if len(q.strip()) < 2:
        return {"items": [], "query": q}
    return {"items": await plan_registry.search_plans(q.strip()), "query": q}


@router.get("/stats", dependencies=[Depends(require_admin)])
async def plan_stats():
    return await plan_registry.get_plan_stats()


@router.get("/{plan_id}")
async def get_plan(plan_id: str):
    return await plan_registry.get_plan(plan_id)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_plan(body: Dict[str, Any] = Body(...), admin: dict = Depends(require_admin)):
    plan = await plan_registry.create_plan(body)
    logger.info(f"Plan {plan.plan_id} created by admin {admin.get('user_id')}")
    return plan


@router.put("/{plan_id}")
async def update_plan(plan_id: str, body: Dict[str, Any] = Body(...), admin: dict = Depends(require_admin)):
    plan = await plan_registry.update_plan(plan_id, body)
    logger.info(f"Plan {plan_id} updated by admin {admin.get('user_id')}")
    return plan


@router.delete("/{plan_id}")
async def delete_plan(plan_id: str, admin: dict = Depends(require_admin)):
    await plan_registry.delete_plan(plan_id)
    logger.info(f"Plan {plan_id} deleted by admin {admin.get('user_id')}")
    return {"success": True, "plan_id": plan_id}
