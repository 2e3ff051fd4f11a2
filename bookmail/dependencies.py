from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bookmail.config import AppConfig, Settings, get_config, get_settings
from bookmail.core.database import get_db
from bookmail.services.email_service import EmailSender, ResendEmailSender

# Type aliases for dependency injection
DBSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Config = Annotated[AppConfig, Depends(get_config)]


def get_email_sender(settings: AppSettings, config: Config) -> EmailSender:
    """Email sender used by the delivery endpoints."""
    return ResendEmailSender.from_settings(settings, config)


Sender = Annotated[EmailSender, Depends(get_email_sender)]
