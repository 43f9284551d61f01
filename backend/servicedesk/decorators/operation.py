from __future__ import annotations
"""Transaction / error boundary for service methods.

Usage:

class TicketService:
    @service_operation('create ticket')
    def create_ticket(self, scope, cmd): ...

The decorated method runs against ``self.session``. On any failure the session is
rolled back. ServiceDeskError subclasses propagate unchanged; anything else is
logged with the call context and re-raised as InternalError("Failed to <label>").
"""
import logging
from functools import wraps

from servicedesk.errors import ServiceDeskError, InternalError

logger = logging.getLogger('servicedesk.operations')


def _scope_context(args, kwargs):
    scope = kwargs.get('scope') or (args[0] if args else None)
    company_id = getattr(scope, 'company_id', None)
    actor_id = getattr(scope, 'actor_id', None)
    return {'company_id': company_id, 'actor_id': actor_id}


def service_operation(label: str):
    def outer(fn):
        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except ServiceDeskError as e:
                self.session.rollback()
                logger.info('%s refused: %s', label, e.message, extra={'code': e.code, **_scope_context(args, kwargs)})
                raise
            except Exception as e:
                self.session.rollback()
                logger.exception('%s failed', label, extra={'operation': fn.__name__, **_scope_context(args, kwargs)})
                raise InternalError(f'Failed to {label}') from e
        return wrapper
    return outer


__all__ = ['service_operation']
