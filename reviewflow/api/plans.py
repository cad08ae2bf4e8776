"""
Plans API endpoints - Feature and limit matrix per subscription plan
"""

from fastapi import APIRouter
from typing import Dict, Any
import logging

from reviewflow.services.plan_service import capabilities_for, get_plan_comparison

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("", response_model=Dict[str, Dict[str, Any]])
def list_plans():
    """Get all subscription plans for comparison"""
    return get_plan_comparison()


@router.get("/{plan_id}", response_model=Dict[str, Any])
def get_plan(plan_id: str):
    """
    Get the capabilities of one plan

    Unknown plan ids answer with the most restrictive plan and `fallback: true`.
    """
    capabilities = capabilities_for(plan_id)
    body = capabilities.to_dict()
    body["fallback"] = capabilities.is_fallback
    return body
