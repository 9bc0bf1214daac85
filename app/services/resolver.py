"""Recipient resolution against the employee directory.

Exact identifier match only, no fuzzy matching. Soft-deleted employees are
filtered here so the rest of the pipeline never has to care about tombstones.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from app.models.db.employees import Employee


@dataclass(frozen=True, slots=True)
class Recipient:
    id: int
    identifier: str
    email: str
    display_name: str


class RecipientResolver(Protocol):
    def resolve(self, identifier: str) -> Optional[Recipient]: ...


def _to_recipient(employee: Employee) -> Recipient:
    return Recipient(
        id=employee.id,
        identifier=employee.ippis_number,
        email=employee.email,
        display_name=employee.full_name,
    )


class DirectoryResolver:
    def __init__(self, session: Session) -> None:
        self.session = session

    def resolve(self, identifier: str) -> Optional[Recipient]:
        if not identifier:
            return None
        employee = (
            self.session.query(Employee)
            .filter(Employee.ippis_number == identifier, Employee.deleted_at.is_(None))
            .one_or_none()
        )
        return _to_recipient(employee) if employee else None


__all__ = ["Recipient", "RecipientResolver", "DirectoryResolver"]
