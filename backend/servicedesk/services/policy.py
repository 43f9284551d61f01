from __future__ import annotations
from flask import abort
from flask_jwt_extended import get_jwt

from servicedesk.errors import ValidationError
from servicedesk.services.commands import Scope


def current_branch_ids():
    claims = get_jwt()
    return [b for b in claims.get('branch_ids') or [] if isinstance(b, int)]


def assert_branch_access(branch_id: int):
    branch_ids = current_branch_ids()
    if not branch_ids:
        return  # No scoping
    if branch_id not in branch_ids:
        abort(403, description='Branch access denied')


def scope_from_claims() -> Scope:
    """Build the service Scope for the current JWT (sub = user id, company_id, branch_ids)."""
    claims = get_jwt()
    company_id = claims.get('company_id')
    if not isinstance(company_id, int):
        raise ValidationError('company_id claim missing')
    try:
        actor_id = int(claims.get('sub'))
    except (TypeError, ValueError):
        raise ValidationError('sub claim must be a user id')
    return Scope(company_id=company_id, actor_id=actor_id, branch_ids=tuple(current_branch_ids()))
