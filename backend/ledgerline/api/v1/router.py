"""API v1 router aggregator."""

from fastapi import APIRouter

from ledgerline.api.v1 import audit, members, notifications, pipeline, projects, transactions

router = APIRouter(prefix="/api/v1")
router.include_router(projects.router)
router.include_router(transactions.router)
router.include_router(members.router)
router.include_router(pipeline.router)
router.include_router(audit.router)
router.include_router(notifications.router)
