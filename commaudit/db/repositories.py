from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from commaudit.db import models

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id: UUID) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity


class OrderRepository(BaseRepository[models.Order]):
    model = models.Order


class CommunicationLogRepository(BaseRepository[models.CommunicationLog]):
    model = models.CommunicationLog

    def get_by_external_id(self, external_id: str) -> models.CommunicationLog | None:
        stmt = select(models.CommunicationLog).where(
            models.CommunicationLog.external_message_id == external_id
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def latest_for_phone(self, phone: str) -> models.CommunicationLog | None:
        """Most recent outbound communication sent to *phone* with a known order."""
        stmt = (
            select(models.CommunicationLog)
            .where(
                models.CommunicationLog.recipient_phone == phone,
                models.CommunicationLog.order_id.is_not(None),
            )
            .order_by(models.CommunicationLog.sent_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def latest_for_email(self, email: str) -> models.CommunicationLog | None:
        stmt = (
            select(models.CommunicationLog)
            .where(
                models.CommunicationLog.recipient_email == email,
                models.CommunicationLog.order_id.is_not(None),
            )
            .order_by(models.CommunicationLog.sent_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()


class NotificationDeliveryLogRepository(BaseRepository[models.NotificationDeliveryLog]):
    model = models.NotificationDeliveryLog

    def get_by_external_id(self, external_id: str) -> models.NotificationDeliveryLog | None:
        stmt = select(models.NotificationDeliveryLog).where(
            models.NotificationDeliveryLog.external_id == external_id
        )
        return self.db.execute(stmt).scalar_one_or_none()


class NotificationPreferenceRepository(BaseRepository[models.NotificationPreference]):
    model = models.NotificationPreference

    def get_by_user_id(self, user_id: str) -> models.NotificationPreference | None:
        stmt = select(models.NotificationPreference).where(
            models.NotificationPreference.user_id == user_id
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def find_by_phone(self, phone: str) -> list[models.NotificationPreference]:
        stmt = select(models.NotificationPreference).where(
            models.NotificationPreference.phone_number == phone
        )
        return list(self.db.execute(stmt).scalars().all())

    def find_by_email(self, email: str) -> list[models.NotificationPreference]:
        stmt = select(models.NotificationPreference).where(
            models.NotificationPreference.email_address == email
        )
        return list(self.db.execute(stmt).scalars().all())


class ExportJobRepository(BaseRepository[models.ExportJob]):
    model = models.ExportJob

    def list_expired(self, now: datetime) -> list[models.ExportJob]:
        stmt = select(models.ExportJob).where(
            models.ExportJob.expires_at.is_not(None),
            models.ExportJob.expires_at <= now,
            models.ExportJob.file_path.is_not(None),
        )
        return list(self.db.execute(stmt).scalars().all())
