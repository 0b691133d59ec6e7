# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Repository Layer — CRUD and search over tenant tables.

Each repository takes a TenantSession from an active tenant scope and
never touches schema state itself: table names are unqualified and
resolve through the scope's search path. Writes flush immediately so
integrity violations surface at the call site as typed errors.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError

from ehr_data.storage.filters import (
    ConditionFilter,
    EncounterFilter,
    OrganizationFilter,
    PatientFilter,
    PractitionerFilter,
)
from ehr_data.storage.models import (
    CodeSystemConcept,
    Condition,
    Encounter,
    Organization,
    Patient,
    Practitioner,
)
from ehr_data.tenancy.errors import RecordNotFoundError, translate_integrity_error
from ehr_data.tenancy.scope import TenantSession

IMMUTABLE_FIELDS = frozenset({"id", "fhir_id", "created_at", "updated_at"})


def _like(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class _TenantRepository:
    """Shared CRUD plumbing; subclasses set ``model`` and ``resource``."""

    model: Any = None
    resource = "record"

    def __init__(self, db: TenantSession):
        self.db = db

    async def _flush(self) -> None:
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise translate_integrity_error(exc, tenant_id=self.db.tenant_id, phase="executing") from exc

    async def _add(self, instance):
        self.db.add(instance)
        await self._flush()
        return instance

    async def get(self, record_id: uuid.UUID):
        """Get by primary key; None when absent from this tenant."""
        return await self.db.get(self.model, record_id)

    async def get_or_raise(self, record_id: uuid.UUID):
        instance = await self.get(record_id)
        if instance is None:
            raise RecordNotFoundError(self.resource, record_id, tenant_id=self.db.tenant_id)
        return instance

    async def get_by_fhir_id(self, fhir_id: str):
        return await self.db.scalar(select(self.model).where(self.model.fhir_id == fhir_id))

    async def update(self, record_id: uuid.UUID, **changes: Any):
        """Apply column changes. Unknown or immutable fields raise ValueError."""
        for key in changes:
            if key in IMMUTABLE_FIELDS or key not in self.model.__table__.c:
                raise ValueError(f"{self.resource} has no updatable field '{key}'")
        instance = await self.get_or_raise(record_id)
        for key, value in changes.items():
            setattr(instance, key, value)
        await self._flush()
        return instance

    async def delete(self, record_id: uuid.UUID) -> bool:
        """Delete by primary key. Returns False when absent."""
        instance = await self.get(record_id)
        if instance is None:
            return False
        await self.db.delete(instance)
        await self._flush()
        return True

    async def count(self) -> int:
        return await self.db.scalar(select(func.count()).select_from(self.model))

    async def _search(
        self,
        conditions: Sequence,
        order_by: Sequence,
        limit: int,
        offset: int,
    ) -> Tuple[List[Any], int]:
        total = await self.db.scalar(
            select(func.count()).select_from(self.model).where(*conditions)
        )
        result = await self.db.scalars(
            select(self.model).where(*conditions).order_by(*order_by).limit(limit).offset(offset)
        )
        return list(result.all()), total


# ── Organization Repository ─────────────────────────────────

class OrganizationRepository(_TenantRepository):
    model = Organization
    resource = "Organization"

    async def create(
        self,
        name: str,
        type_code: Optional[str] = None,
        active: bool = True,
        parent_org_id: Optional[uuid.UUID] = None,
    ) -> Organization:
        return await self._add(
            Organization(name=name, type_code=type_code, active=active, parent_org_id=parent_org_id)
        )

    async def search(
        self, filters: Optional[OrganizationFilter] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Organization], int]:
        f = filters or OrganizationFilter()
        conditions = []
        if f.name is not None:
            conditions.append(Organization.name.ilike(_like(f.name)))
        if f.type_code is not None:
            conditions.append(Organization.type_code == f.type_code)
        if f.active is not None:
            conditions.append(Organization.active == f.active)
        if f.parent_org_id is not None:
            conditions.append(Organization.parent_org_id == f.parent_org_id)
        return await self._search(conditions, [Organization.name, Organization.id], limit, offset)


# ── Practitioner Repository ─────────────────────────────────

class PractitionerRepository(_TenantRepository):
    model = Practitioner
    resource = "Practitioner"

    async def create(
        self,
        first_name: str,
        last_name: str,
        npi_number: Optional[str] = None,
        specialty: Optional[str] = None,
        active: bool = True,
    ) -> Practitioner:
        return await self._add(
            Practitioner(
                first_name=first_name,
                last_name=last_name,
                npi_number=npi_number,
                specialty=specialty,
                active=active,
            )
        )

    async def search(
        self, filters: Optional[PractitionerFilter] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Practitioner], int]:
        f = filters or PractitionerFilter()
        conditions = []
        if f.name is not None:
            pattern = _like(f.name)
            conditions.append(or_(Practitioner.first_name.ilike(pattern), Practitioner.last_name.ilike(pattern)))
        if f.specialty is not None:
            conditions.append(Practitioner.specialty == f.specialty)
        if f.npi_number is not None:
            conditions.append(Practitioner.npi_number == f.npi_number)
        if f.active is not None:
            conditions.append(Practitioner.active == f.active)
        return await self._search(
            conditions, [Practitioner.last_name, Practitioner.first_name, Practitioner.id], limit, offset,
        )


# ── Patient Repository ──────────────────────────────────────

class PatientRepository(_TenantRepository):
    model = Patient
    resource = "Patient"

    async def create(
        self,
        mrn: str,
        first_name: str,
        last_name: str,
        birth_date: Optional[date] = None,
        gender: Optional[str] = None,
        active: bool = True,
        managing_org_id: Optional[uuid.UUID] = None,
    ) -> Patient:
        """Create a patient. A duplicate MRN in this tenant raises UniqueViolationError."""
        return await self._add(
            Patient(
                mrn=mrn,
                first_name=first_name,
                last_name=last_name,
                birth_date=birth_date,
                gender=gender,
                active=active,
                managing_org_id=managing_org_id,
            )
        )

    async def get_by_mrn(self, mrn: str) -> Optional[Patient]:
        return await self.db.scalar(select(Patient).where(Patient.mrn == mrn))

    async def search(
        self, filters: Optional[PatientFilter] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Patient], int]:
        f = filters or PatientFilter()
        conditions = []
        if f.mrn is not None:
            conditions.append(Patient.mrn == f.mrn)
        if f.name is not None:
            pattern = _like(f.name)
            conditions.append(or_(Patient.first_name.ilike(pattern), Patient.last_name.ilike(pattern)))
        if f.family is not None:
            conditions.append(func.lower(Patient.last_name) == f.family.lower())
        if f.gender is not None:
            conditions.append(Patient.gender == f.gender)
        if f.birth_date is not None:
            conditions.append(Patient.birth_date == f.birth_date)
        if f.active is not None:
            conditions.append(Patient.active == f.active)
        if f.managing_org_id is not None:
            conditions.append(Patient.managing_org_id == f.managing_org_id)
        return await self._search(
            conditions, [Patient.last_name, Patient.first_name, Patient.id], limit, offset,
        )


# ── Encounter Repository ────────────────────────────────────

class EncounterRepository(_TenantRepository):
    model = Encounter
    resource = "Encounter"

    async def create(
        self,
        patient_id: uuid.UUID,
        status: str,
        class_code: str,
        primary_practitioner_id: Optional[uuid.UUID] = None,
        service_provider_id: Optional[uuid.UUID] = None,
        period_start: Optional[datetime] = None,
        reason_text: Optional[str] = None,
    ) -> Encounter:
        """
        Create an encounter. ``patient_id`` must exist in this tenant;
        otherwise the engine rejects the row (ForeignKeyViolationError).
        """
        return await self._add(
            Encounter(
                patient_id=patient_id,
                status=status,
                class_code=class_code,
                primary_practitioner_id=primary_practitioner_id,
                service_provider_id=service_provider_id,
                period_start=period_start or datetime.now(timezone.utc),
                reason_text=reason_text,
            )
        )

    async def finish(self, encounter_id: uuid.UUID, period_end: Optional[datetime] = None) -> Encounter:
        return await self.update(
            encounter_id,
            status="finished",
            period_end=period_end or datetime.now(timezone.utc),
        )

    async def list_for_patient(self, patient_id: uuid.UUID, limit: int = 50, offset: int = 0) -> List[Encounter]:
        items, _ = await self.search(EncounterFilter(patient_id=patient_id), limit=limit, offset=offset)
        return items

    async def search(
        self, filters: Optional[EncounterFilter] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Encounter], int]:
        f = filters or EncounterFilter()
        conditions = []
        if f.patient_id is not None:
            conditions.append(Encounter.patient_id == f.patient_id)
        if f.practitioner_id is not None:
            conditions.append(Encounter.primary_practitioner_id == f.practitioner_id)
        if f.status is not None:
            conditions.append(Encounter.status == f.status)
        if f.class_code is not None:
            conditions.append(Encounter.class_code == f.class_code)
        if f.started_after is not None:
            conditions.append(Encounter.period_start >= f.started_after)
        if f.started_before is not None:
            conditions.append(Encounter.period_start < f.started_before)
        return await self._search(conditions, [Encounter.period_start.desc(), Encounter.id], limit, offset)


# ── Condition Repository ────────────────────────────────────

class ConditionRepository(_TenantRepository):
    model = Condition
    resource = "Condition"

    async def create(
        self,
        patient_id: uuid.UUID,
        code_value: str,
        clinical_status: str = "active",
        code_system: Optional[str] = None,
        code_display: Optional[str] = None,
        encounter_id: Optional[uuid.UUID] = None,
        onset_date: Optional[date] = None,
    ) -> Condition:
        return await self._add(
            Condition(
                patient_id=patient_id,
                code_value=code_value,
                clinical_status=clinical_status,
                code_system=code_system,
                code_display=code_display,
                encounter_id=encounter_id,
                onset_date=onset_date,
            )
        )

    async def search(
        self, filters: Optional[ConditionFilter] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Condition], int]:
        f = filters or ConditionFilter()
        conditions = []
        if f.patient_id is not None:
            conditions.append(Condition.patient_id == f.patient_id)
        if f.encounter_id is not None:
            conditions.append(Condition.encounter_id == f.encounter_id)
        if f.clinical_status is not None:
            conditions.append(Condition.clinical_status == f.clinical_status)
        if f.code_value is not None:
            conditions.append(Condition.code_value == f.code_value)
        return await self._search(conditions, [Condition.created_at.desc(), Condition.id], limit, offset)


# ── Code System Repository (shared, read-only) ──────────────

class CodeSystemRepository:
    """Reference terminology from the shared schema, read through the tenant path."""

    def __init__(self, db: TenantSession):
        self.db = db

    async def lookup(self, system: str, code: str) -> Optional[CodeSystemConcept]:
        return await self.db.scalar(
            select(CodeSystemConcept).where(
                CodeSystemConcept.system == system,
                CodeSystemConcept.code == code,
            )
        )

    async def search(self, system: str, text: str, limit: int = 20) -> List[CodeSystemConcept]:
        result = await self.db.scalars(
            select(CodeSystemConcept)
            .where(
                CodeSystemConcept.system == system,
                CodeSystemConcept.active.is_(True),
                CodeSystemConcept.display.ilike(_like(text)),
            )
            .order_by(CodeSystemConcept.code)
            .limit(limit)
        )
        return list(result.all())
