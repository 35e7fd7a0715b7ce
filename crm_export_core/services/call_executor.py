"""
Authenticated call execution with a single renew-and-retry on 401.
"""

from typing import Callable, TypeVar

from ..exceptions import AuthenticationFailedError, UpstreamUnauthorizedError
from ..utils.logger import get_logger
from .credential_lifecycle_service import CredentialLifecycleService

T = TypeVar("T")


class AuthenticatedCallExecutor:
    """
    Runs upstream operations with a resolved access token.

    An operation receives the token as its only argument. If it raises
    UpstreamUnauthorizedError the credential is renewed for real and the
    operation is retried exactly once; a second 401 becomes
    AuthenticationFailedError and is never retried.
    """

    def __init__(self, lifecycle: CredentialLifecycleService):
        self.lifecycle = lifecycle
        self.logger = get_logger()

    def execute(self, location_id: str, operation: Callable[[str], T]) -> T:
        return self._run(
            operation,
            resolve=lambda: self.lifecycle.resolve(location_id),
            renew=lambda: self.lifecycle.force_renew(location_id),
            scope={"location_id": location_id},
        )

    def execute_for_company(self, company_id: str, operation: Callable[[str], T]) -> T:
        return self._run(
            operation,
            resolve=lambda: self.lifecycle.resolve_company(company_id),
            renew=lambda: self.lifecycle.force_renew_company(company_id),
            scope={"company_id": company_id},
        )

    def _run(
        self,
        operation: Callable[[str], T],
        resolve: Callable[[], str],
        renew: Callable[[], str],
        scope: dict,
    ) -> T:
        try:
            return operation(resolve())
        except UpstreamUnauthorizedError:
            self.logger.info("Upstream returned 401, renewing credential and retrying", extra=scope)

        access_token = renew()
        try:
            return operation(access_token)
        except UpstreamUnauthorizedError as e:
            raise AuthenticationFailedError(cause=e, **scope) from e
