# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Search Filters — Explicit, typed filter sets per entity.

Every field is optional; None means "do not filter on this column".
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


@dataclass
class OrganizationFilter:
    name: Optional[str] = None          # case-insensitive substring
    type_code: Optional[str] = None
    active: Optional[bool] = None
    parent_org_id: Optional[uuid.UUID] = None


@dataclass
class PractitionerFilter:
    name: Optional[str] = None          # matches first or last name
    specialty: Optional[str] = None
    npi_number: Optional[str] = None
    active: Optional[bool] = None


@dataclass
class PatientFilter:
    mrn: Optional[str] = None
    name: Optional[str] = None          # matches first or last name
    family: Optional[str] = None        # exact last name, case-insensitive
    gender: Optional[str] = None
    birth_date: Optional[date] = None
    active: Optional[bool] = None
    managing_org_id: Optional[uuid.UUID] = None


@dataclass
class EncounterFilter:
    patient_id: Optional[uuid.UUID] = None
    practitioner_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    class_code: Optional[str] = None
    started_after: Optional[datetime] = None
    started_before: Optional[datetime] = None


@dataclass
class ConditionFilter:
    patient_id: Optional[uuid.UUID] = None
    encounter_id: Optional[uuid.UUID] = None
    clinical_status: Optional[str] = None
    code_value: Optional[str] = None
