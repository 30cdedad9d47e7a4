"""Tests for the error taxonomy, amount parsing and the request auth context"""
from decimal import Decimal

import pytest

from auth_context import AuthContext, resolve_auth_context
from app import db, Profile
from workflow_errors import (
    AuthorizationError, ConflictError, InvalidTransitionError, StoreError,
    ValidationError, parse_amount
)


@pytest.mark.parametrize('value, expected', [
    (100, Decimal('100.00')),
    ('12.5', Decimal('12.50')),
    (' 7 ', Decimal('7.00')),
    (0.1, Decimal('0.10')),
    ('0.005', Decimal('0.01')),
])
def test_parse_amount_accepts(value, expected):
    assert parse_amount(value) == expected


@pytest.mark.parametrize('value', [None, '', True, False, 'abc', 'NaN', 'Infinity', 0, '-3', '0.004', '1e999'])
def test_parse_amount_rejects(value):
    with pytest.raises(ValidationError):
        parse_amount(value)


def test_parse_amount_names_the_field():
    with pytest.raises(ValidationError) as excinfo:
        parse_amount(None, 'budget')
    assert excinfo.value.to_dict() == {'error': 'budget is required'}


def test_status_codes():
    assert ValidationError('x').status_code == 400
    assert AuthorizationError('x').status_code == 403
    assert ConflictError('x').status_code == 409

    invalid = InvalidTransitionError('released', 'funded')
    assert isinstance(invalid, ConflictError)
    assert (invalid.current, invalid.target) == ('released', 'funded')

    store = StoreError('start_project')
    assert store.status_code == 500
    assert store.to_dict()['step'] == 'start_project'


def test_auth_context_roles():
    client = AuthContext(1, 'client')
    assert client.is_client and not client.is_freelancer
    client.require_role('client')
    with pytest.raises(AuthorizationError):
        client.require_role('freelancer')


def test_resolve_auth_context(app, make_profile):
    freelancer = make_profile('freelancer')
    unknown_role = make_profile('guest')

    auth = resolve_auth_context(db, Profile, freelancer.id)
    assert (auth.user_id, auth.role) == (freelancer.id, 'freelancer')
    assert resolve_auth_context(db, Profile, None) is None
    assert resolve_auth_context(db, Profile, 9999) is None
    assert resolve_auth_context(db, Profile, unknown_role.id) is None
