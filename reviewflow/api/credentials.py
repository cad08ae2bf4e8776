"""
Google Business credentials API endpoints - Connect, read and disconnect

Service errors propagate to the application's ReviewFlowError handler.
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session
from typing import Dict, Any, Optional
import logging

from reviewflow.core.errors import InternalError, ReviewFlowError
from reviewflow.db.database import get_db
from reviewflow.services.credential_service import CredentialService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/google-business/credentials", tags=["google-business"])


class SaveCredentialsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_id: str = Field(..., alias="businessId")
    user_id: str = Field(..., alias="userId")
    credentials: Dict[str, Optional[str]]


def get_credential_service(db: Session = Depends(get_db)) -> CredentialService:
    return CredentialService(db)


@router.get("")
def get_credentials(
    business_id: str = Query(..., alias="businessId"),
    user_id: str = Query(..., alias="userId"),
    service: CredentialService = Depends(get_credential_service),
):
    """Get the decrypted credential bundle for a business"""
    try:
        return service.get_credentials(business_id, user_id).to_dict()

    except ReviewFlowError:
        raise
    except Exception as e:
        logger.error(f"Error fetching credentials for business {business_id}: {e}", exc_info=True)
        raise InternalError("Failed to fetch credentials") from e


@router.post("")
def save_credentials(
    request: SaveCredentialsRequest,
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    """Encrypt and store a complete credential bundle"""
    service.save_credentials(request.business_id, request.user_id, request.credentials)
    return {"success": True, "message": "Credentials saved successfully"}


@router.delete("")
def delete_credentials(
    business_id: str = Query(..., alias="businessId"),
    user_id: str = Query(..., alias="userId"),
    service: CredentialService = Depends(get_credential_service),
) -> Dict[str, Any]:
    """Disconnect Google Business Profile for a business"""
    service.clear_credentials(business_id, user_id)
    return {"success": True, "message": "Google Business Profile disconnected"}
