from fastapi import APIRouter, Depends

from src.onboarding.container import AppContainer, get_container

router = APIRouter(prefix="", tags=["system"])


@router.get("/health")
def health_check_v1(container: AppContainer = Depends(get_container)) -> dict:
    """API v1 health endpoint with the configured providers."""
    return {
        "status": "ok",
        "version": "v1",
        "chat_provider": container.gateway.chat_provider,
        "voice_providers": container.gateway.voice_providers,
    }
