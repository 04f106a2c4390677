from __future__ import annotations

from fastapi import APIRouter, Depends

from ...domain.interaction_models import InteractionRequest, InteractionResult
from ...services.engine import DiscoveryEngine, get_engine

router = APIRouter(prefix="/interactions", tags=["interactions"])


@router.post("", response_model=InteractionResult)
def post_interaction(
    payload: InteractionRequest,
    engine: DiscoveryEngine = Depends(get_engine),
) -> InteractionResult:
    return engine.handle(payload)
