"""Error taxonomy for the contract core.

Every exception carries a human readable ``detail`` and the HTTP status a
routing layer would normally map it to, so callers can translate errors
without a lookup table of their own.
"""
from __future__ import annotations

from typing import Optional


class ContractError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundException(ContractError):
    """Unknown contract, template, token or short code."""
    status_code = 404


class StateConflictException(ContractError):
    """Transition not legal from the current status, including lost races."""
    status_code = 409

    def __init__(self, current: Optional[str], required, detail: Optional[str] = None):
        if isinstance(required, str):
            required = (required,)
        self.current = current
        self.required = tuple(required)
        super().__init__(
            detail
            or f"Contract is {current or 'missing'}; operation requires {' or '.join(self.required)}"
        )


class ValidationException(ContractError):
    status_code = 422


class VerificationFailedException(ContractError):
    status_code = 403


class UnauthorizedException(ContractError):
    status_code = 403


class PipelineException(ContractError):
    """An assembly step failed; wraps the underlying cause."""
    status_code = 500

    def __init__(self, step: str, cause: Optional[BaseException] = None):
        self.step = step
        self.cause = cause
        message = f"Document assembly failed at step '{step}'"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class DependencyUnavailableException(ContractError):
    """Signing credential or master document configured but unresolvable."""
    status_code = 503
