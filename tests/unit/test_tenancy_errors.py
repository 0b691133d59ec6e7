# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.
"""Unit tests for the tenancy error taxonomy and integrity-error translation."""

import asyncio

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from ehr_data.tenancy.errors import (
    CheckViolationError,
    ConstraintViolationError,
    ForeignKeyViolationError,
    InvalidTenantIdError,
    NotNullViolationError,
    RecordNotFoundError,
    TenancyError,
    TenantNotProvisionedError,
    UniqueViolationError,
    is_disconnect,
    sqlstate_of,
    translate_integrity_error,
)


class DriverError(Exception):
    def __init__(self, message, sqlstate=None, constraint_name=None):
        super().__init__(message)
        self.sqlstate = sqlstate
        self.constraint_name = constraint_name


class PsycopgDiag:
    constraint_name = "uq_patient_mrn"


class PsycopgError(Exception):
    pgcode = "23505"
    diag = PsycopgDiag()


def wrap(orig):
    return IntegrityError("INSERT INTO patient ...", {}, orig)


class TestErrorContext:
    def test_str_includes_tenant_and_phase(self):
        err = TenancyError("boom", tenant_id="acme", phase="bound")
        assert str(err) == "boom (tenant=acme, phase=bound)"

    def test_str_without_context(self):
        assert str(TenancyError("boom")) == "boom"

    def test_not_provisioned(self):
        err = TenantNotProvisionedError("acme", "tenant_acme")
        assert err.kind == "not_provisioned"
        assert err.schema == "tenant_acme"
        assert err.tenant_id == "acme"

    def test_invalid_tenant(self):
        err = InvalidTenantIdError("a-b", "bad charset")
        assert err.kind == "invalid_tenant"
        assert err.phase == "validate"
        assert "'a-b'" in err.message

    def test_not_found(self):
        err = RecordNotFoundError("Patient", "123", tenant_id="acme")
        assert err.kind == "not_found"
        assert err.message == "Patient '123' not found"


class TestTranslateIntegrityError:
    @pytest.mark.parametrize("sqlstate, error_cls", [
        ("23503", ForeignKeyViolationError),
        ("23505", UniqueViolationError),
        ("23502", NotNullViolationError),
        ("23514", CheckViolationError),
    ])
    def test_sqlstate_mapping(self, sqlstate, error_cls):
        err = translate_integrity_error(wrap(DriverError("violation", sqlstate)), tenant_id="acme", phase="executing")
        assert type(err) is error_cls
        assert isinstance(err, ConstraintViolationError)
        assert err.sqlstate == sqlstate
        assert err.tenant_id == "acme"
        assert err.phase == "executing"

    def test_unknown_sqlstate_is_generic(self):
        err = translate_integrity_error(wrap(DriverError("exclusion", "23P01")))
        assert type(err) is ConstraintViolationError
        assert err.kind == "constraint_violation"

    def test_constraint_name_and_message(self):
        orig = DriverError(
            'insert or update on table "encounter" violates foreign key constraint\nDETAIL: Key ...',
            "23503",
            "encounter_patient_id_fkey",
        )
        err = translate_integrity_error(wrap(orig))
        assert err.constraint == "encounter_patient_id_fkey"
        assert err.message == 'insert or update on table "encounter" violates foreign key constraint'

    def test_sqlstate_from_chained_cause(self):
        cause = DriverError("duplicate key", "23505")
        orig = Exception("adapter error")
        orig.__cause__ = cause
        assert sqlstate_of(wrap(orig)) == "23505"

    def test_psycopg_style_attributes(self):
        err = translate_integrity_error(wrap(PsycopgError("duplicate key")))
        assert isinstance(err, UniqueViolationError)
        assert err.constraint == "uq_patient_mrn"


class TestIsDisconnect:
    def test_cancellation_and_timeout(self):
        assert is_disconnect(asyncio.CancelledError())
        assert is_disconnect(asyncio.TimeoutError())

    def test_os_error(self):
        assert is_disconnect(ConnectionResetError())

    def test_invalidated_dbapi_error(self):
        assert is_disconnect(DBAPIError("SELECT 1", {}, OSError(), connection_invalidated=True))

    def test_ordinary_errors(self):
        assert not is_disconnect(ValueError("bad"))
        assert not is_disconnect(OperationalError("SELECT 1", {}, DriverError("lock timeout", "55P03")))
        assert not is_disconnect(wrap(DriverError("dup", "23505")))
