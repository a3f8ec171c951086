# botcast/api/v1/router.py
"""Main API router combining all v1 endpoints"""
from fastapi import APIRouter

from botcast.api.v1 import campaigns, downsells

api_router = APIRouter()

api_router.include_router(campaigns.router, prefix="/campaigns", tags=["Campaigns"])
api_router.include_router(downsells.router, prefix="/downsells", tags=["Downsells"])
