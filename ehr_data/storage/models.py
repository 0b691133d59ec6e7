# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
ORM Models — Table definitions for the EHR data-access layer.

Tenant tables (created in every tenant schema, no schema qualifier):
  - organization: Organizational directory
  - practitioner: Clinicians
  - patient: Patient identity, unique MRN per tenant
  - encounter: Visits, FK to patient / practitioner / organization
  - condition: Problem list entries, FK to patient / encounter

Shared tables (shared schema):
  - code_system_concept: Reference terminology (LOINC, ICD-10, SNOMED, ...)
  - tenant_registry: Provisioned tenants and their schemas

Foreign keys are unqualified, so they resolve inside the schema the table
is created in. A row can never reference another tenant's primary key.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Boolean, Date,
    DateTime, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID

from ehr_data.storage.database import Base, SharedBase


def _utcnow():
    return datetime.now(timezone.utc)


def _genuuid():
    return uuid.uuid4()


def _fhir_id():
    return str(uuid.uuid4())


# ── Organization ────────────────────────────────────────────

class Organization(Base):
    __tablename__ = "organization"

    id = Column(UUID(as_uuid=True), primary_key=True, default=_genuuid)
    fhir_id = Column(String(64), unique=True, nullable=False, default=_fhir_id)
    name = Column(String(255), nullable=False)
    type_code = Column(String(50), nullable=True)  # prov | dept | team | ins | ...
    active = Column(Boolean, nullable=False, default=True)
    parent_org_id = Column(UUID(as_uuid=True), ForeignKey("organization.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<Organization {self.id} {self.name!r}>"


# ── Practitioner ────────────────────────────────────────────

class Practitioner(Base):
    __tablename__ = "practitioner"

    id = Column(UUID(as_uuid=True), primary_key=True, default=_genuuid)
    fhir_id = Column(String(64), unique=True, nullable=False, default=_fhir_id)
    active = Column(Boolean, nullable=False, default=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    npi_number = Column(String(20), nullable=True, unique=True)
    specialty = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_practitioner_name", "last_name", "first_name"),
    )

    def __repr__(self):
        return f"<Practitioner {self.id} {self.last_name!r}>"


# ── Patient ─────────────────────────────────────────────────

class Patient(Base):
    __tablename__ = "patient"

    id = Column(UUID(as_uuid=True), primary_key=True, default=_genuuid)
    fhir_id = Column(String(64), unique=True, nullable=False, default=_fhir_id)
    active = Column(Boolean, nullable=False, default=True)
    mrn = Column(String(64), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    birth_date = Column(Date, nullable=True)
    gender = Column(String(16), nullable=True)  # male | female | other | unknown
    managing_org_id = Column(UUID(as_uuid=True), ForeignKey("organization.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("mrn", name="uq_patient_mrn"),
        Index("ix_patient_name", "last_name", "first_name"),
    )

    def __repr__(self):
        return f"<Patient {self.id} mrn={self.mrn}>"


# ── Encounter ───────────────────────────────────────────────

class Encounter(Base):
    __tablename__ = "encounter"

    id = Column(UUID(as_uuid=True), primary_key=True, default=_genuuid)
    fhir_id = Column(String(64), unique=True, nullable=False, default=_fhir_id)
    status = Column(String(30), nullable=False)  # planned | in-progress | finished | cancelled
    class_code = Column(String(20), nullable=False)  # AMB | IMP | EMER | VR
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patient.id"), nullable=False)
    primary_practitioner_id = Column(UUID(as_uuid=True), ForeignKey("practitioner.id"), nullable=True)
    service_provider_id = Column(UUID(as_uuid=True), ForeignKey("organization.id"), nullable=True)
    period_start = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    period_end = Column(DateTime(timezone=True), nullable=True)
    reason_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_encounter_patient", "patient_id", "period_start"),
    )

    def __repr__(self):
        return f"<Encounter {self.id} status={self.status}>"


# ── Condition ───────────────────────────────────────────────

class Condition(Base):
    __tablename__ = "condition"

    id = Column(UUID(as_uuid=True), primary_key=True, default=_genuuid)
    fhir_id = Column(String(64), unique=True, nullable=False, default=_fhir_id)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patient.id"), nullable=False)
    encounter_id = Column(UUID(as_uuid=True), ForeignKey("encounter.id"), nullable=True)
    clinical_status = Column(String(30), nullable=False)  # active | resolved | inactive
    code_system = Column(String(255), nullable=True)
    code_value = Column(String(64), nullable=False)
    code_display = Column(String(255), nullable=True)
    onset_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_condition_patient", "patient_id", "clinical_status"),
    )

    def __repr__(self):
        return f"<Condition {self.id} {self.code_value}>"


# ── Shared: Code System Concepts ────────────────────────────

class CodeSystemConcept(SharedBase):
    __tablename__ = "code_system_concept"

    id = Column(UUID(as_uuid=True), primary_key=True, default=_genuuid)
    system = Column(String(255), nullable=False)  # e.g. http://loinc.org
    code = Column(String(64), nullable=False)
    display = Column(String(512), nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("system", "code", name="uq_code_system_concept"),
    )

    def __repr__(self):
        return f"<Concept {self.system}|{self.code}>"


# ── Shared: Tenant Registry ─────────────────────────────────

class TenantRegistryEntry(SharedBase):
    __tablename__ = "tenant_registry"

    tenant_id = Column(String(64), primary_key=True)
    schema_name = Column(String(63), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<Tenant {self.tenant_id} schema={self.schema_name}>"
