from typing import List

from fastapi import APIRouter, HTTPException

from unillm.api.deps import OrchestratorDep
from unillm.errors import LLMError, UnknownModel
from unillm.providers import ModelInfo
from unillm.schemas import ProviderSummary

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("/", response_model=List[ProviderSummary])
def list_providers(orchestrator: OrchestratorDep):
    return [ProviderSummary.from_descriptor(d) for d in orchestrator.list_providers()]


@router.get("/{provider_id}/models", response_model=List[ModelInfo])
async def list_models(provider_id: str, orchestrator: OrchestratorDep):
    try:
        return await orchestrator.list_models(provider_id)
    except UnknownModel as e:
        raise HTTPException(status_code=404, detail=e.message)
    except LLMError as e:
        raise HTTPException(status_code=502, detail=e.message)


@router.post("/{provider_id}/refresh", response_model=List[ModelInfo])
async def refresh_models(provider_id: str, orchestrator: OrchestratorDep):
    try:
        return await orchestrator.refresh_models(provider_id, force=True)
    except UnknownModel as e:
        raise HTTPException(status_code=404, detail=e.message)
    except LLMError as e:
        raise HTTPException(status_code=502, detail=e.message)
