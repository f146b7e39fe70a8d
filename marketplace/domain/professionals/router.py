"""Professionals router - profile edits that never touch subscriptionStatus"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ...database import get_db
from ..billing.router import require_entitlement
from ..billing.repository import SubscriptionRepository
from ..billing.schemas import Identity, Role
from .schemas import ProfileUpdate, ProfileUpdateResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/professionals", tags=["Professionals"])


def get_profile_repository(db=Depends(get_db)) -> SubscriptionRepository:
    """Dependency injection for the professionals repository"""
    return SubscriptionRepository(db)


@router.patch("/me/profile", response_model=ProfileUpdateResponse)
async def update_my_profile(
    data: ProfileUpdate,
    identity: Identity = Depends(require_entitlement),
    repo: SubscriptionRepository = Depends(get_profile_repository),
):
    """Update the caller's public profile"""
    if identity.role != Role.PROFESSIONAL:
        raise HTTPException(status_code=403, detail="Apenas profissionais possuem perfil")

    fields = data.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="Nenhum campo para atualizar")

    repo.update_profile_fields(identity.uid, fields)
    logger.info(f"✏️ Professional {identity.uid} updated profile fields {sorted(fields)}")
    return ProfileUpdateResponse(updated=sorted(fields))
