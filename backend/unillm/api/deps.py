from typing import Annotated

from fastapi import Depends, Header, Request

from unillm.services.credentials import CredentialSource
from unillm.services.orchestrator import CompletionOrchestrator


def get_orchestrator(request: Request) -> CompletionOrchestrator:
    return request.app.state.orchestrator


def get_credentials(request: Request) -> CredentialSource:
    return request.app.state.credentials


def get_api_key(x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None) -> str:
    return x_api_key or "public"


OrchestratorDep = Annotated[CompletionOrchestrator, Depends(get_orchestrator)]
CredentialsDep = Annotated[CredentialSource, Depends(get_credentials)]
ApiKeyDep = Annotated[str, Depends(get_api_key)]
