from __future__ import annotations
"""Interfaces of the systems the ticket core talks to but does not own.

Only ``SequenceNumberGenerator`` does real work (it needs the caller's session);
the rest default to log-only implementations so the core runs standalone.
"""
import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.orm import Session

from servicedesk.models.org import Branch
from servicedesk.models.reference import DocumentSequence
from servicedesk.utils.clock import utcnow

logger = logging.getLogger(__name__)

DOC_SERVICE_TICKET = 'SERVICE_TICKET'


@runtime_checkable
class NumberGenerator(Protocol):
    def generate(self, session: Session, company_id: int, document_type: str, branch_id: int) -> str:
        ...


@runtime_checkable
class JobSheetGenerator(Protocol):
    def generate(self, ticket_id: int, actor_id: int) -> None:
        ...


@runtime_checkable
class NotificationSender(Protocol):
    def notify_assigned(self, technician_id: int, ticket_id: int, ticket_number: str,
                        device_model: str, damage_condition: str) -> None:
        ...


@runtime_checkable
class PointsAwarder(Protocol):
    def on_completed(self, ticket_id: int) -> None:
        ...

    def on_delivered(self, ticket_id: int) -> None:
        ...


@runtime_checkable
class WarrantyRecorder(Protocol):
    def create_for_ticket(self, ticket_id: int) -> None:
        ...


@runtime_checkable
class FileStore(Protocol):
    def delete(self, url: str) -> None:
        ...


class SequenceNumberGenerator:
    """PREFIX-BRANCHCODE-YEAR-000001, one counter per (company, branch, type, year)."""

    def __init__(self, prefix: str = 'SRV'):
        self.prefix = prefix

    def generate(self, session: Session, company_id: int, document_type: str, branch_id: int) -> str:
        year = utcnow().year
        seq = session.execute(
            select(DocumentSequence).where(
                DocumentSequence.company_id == company_id,
                DocumentSequence.branch_id == branch_id,
                DocumentSequence.document_type == document_type,
                DocumentSequence.year == year,
            )
        ).scalar_one_or_none()
        if seq is None:
            seq = DocumentSequence(company_id=company_id, branch_id=branch_id,
                                   document_type=document_type, year=year, next_value=1)
            session.add(seq)
        value = seq.next_value
        seq.next_value = value + 1
        branch = session.get(Branch, branch_id)
        code = branch.code if branch is not None else str(branch_id)
        return f'{self.prefix}-{code}-{year}-{value:06d}'


class LoggingJobSheetGenerator:
    def generate(self, ticket_id: int, actor_id: int) -> None:
        logger.info('job sheet requested', extra={'ticket_id': ticket_id, 'actor_id': actor_id})


class LoggingNotificationSender:
    def notify_assigned(self, technician_id, ticket_id, ticket_number, device_model, damage_condition) -> None:
        logger.info(
            'technician assignment notification',
            extra={'technician_id': technician_id, 'ticket_id': ticket_id, 'ticket_number': ticket_number},
        )


class LoggingPointsAwarder:
    def on_completed(self, ticket_id: int) -> None:
        logger.info('points award (completed)', extra={'ticket_id': ticket_id})

    def on_delivered(self, ticket_id: int) -> None:
        logger.info('points award (delivered)', extra={'ticket_id': ticket_id})


class LoggingWarrantyRecorder:
    def create_for_ticket(self, ticket_id: int) -> None:
        logger.info('warranty record requested', extra={'ticket_id': ticket_id})


class LoggingFileStore:
    def delete(self, url: str) -> None:
        logger.info('file delete requested', extra={'url': url})


@dataclass
class Collaborators:
    numbers: NumberGenerator = field(default_factory=SequenceNumberGenerator)
    job_sheets: JobSheetGenerator = field(default_factory=LoggingJobSheetGenerator)
    notifications: NotificationSender = field(default_factory=LoggingNotificationSender)
    points: PointsAwarder = field(default_factory=LoggingPointsAwarder)
    warranties: WarrantyRecorder = field(default_factory=LoggingWarrantyRecorder)
    files: FileStore = field(default_factory=LoggingFileStore)


__all__ = [
    'NumberGenerator', 'JobSheetGenerator', 'NotificationSender', 'PointsAwarder',
    'WarrantyRecorder', 'FileStore', 'SequenceNumberGenerator', 'Collaborators',
    'DOC_SERVICE_TICKET',
]
