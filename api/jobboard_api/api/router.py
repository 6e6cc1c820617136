from fastapi import APIRouter

from jobboard_api.api.routes import admin, health, jobs, payments, postings, pricing

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(pricing.router, prefix="/pricing", tags=["public"])
api_router.include_router(postings.router, prefix="/postings", tags=["postings"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
