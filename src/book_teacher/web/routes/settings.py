"""Agent settings endpoints."""

from fastapi import APIRouter, HTTPException, status

from book_teacher.db import sessions_repository
from book_teacher.web.schemas import SettingsResponse, SettingsUpdate

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("", response_model=SettingsResponse)
async def get_settings() -> SettingsResponse:
    """Get the agent settings."""
    try:
        settings = sessions_repository.get_agent_settings()
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return SettingsResponse.model_validate(settings)


@router.patch("", response_model=SettingsResponse)
async def update_settings(update: SettingsUpdate) -> SettingsResponse:
    """Update the agent settings.

    Sessions already loaded keep the values they were loaded with.
    """
    settings = sessions_repository.update_agent_settings(
        ai_model=update.ai_model,
        token_budget=update.token_budget,
        auto_save_seconds=update.auto_save_seconds,
        clear_auto_save=update.disable_auto_save,
    )
    return SettingsResponse.model_validate(settings)
