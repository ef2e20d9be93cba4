"""Entra Graph Samples — Directory queries against Microsoft Graph.

Each operation issues its requests through the CAE-aware wrapper, so a
claims challenge turns into a re-authentication instead of an error, and
walks the remaining pages of the collection where there are any:

  - ``GET /me``                       → signed-in user's profile
  - ``GET /me/photo/$value``          → signed-in user's photo (may not exist)
  - ``GET /me/memberOf``              → groups the user belongs to (roles filtered out)
  - ``GET /users``                    → first ``max_rows`` users of the tenant
  - ``GET /users?$filter=startswith`` → user search by name, UPN or mail
  - ``GET /users/{id|upn}``           → a single user (may not exist)
  - ``GET /groups``                   → every group, ordered by display name
  - ``GET|DELETE .../authentication/fido2Methods`` → FIDO2 security keys

Required delegated scopes: User.Read, User.ReadBasic.All, Group.Read.All;
the FIDO2 operations also need UserAuthenticationMethod.ReadWrite(.All).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from kiota_abstractions.api_error import APIError

from src.graph.cae import CaeCallWrapper, GraphOutcome, error_code
from src.graph.paging import GraphPageCursor, accumulate_pages, collect_groups
from src.middleware.tracing import trace_graph_call

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ROWS = 50
SEARCH_RESULT_LIMIT = 20
GROUP_PAGE_SIZE = 999
GROUP_SELECT_FIELDS = ["id", "displayName", "description", "groupTypes", "mail", "visibility"]
USER_SELECT_FIELDS = ["id", "displayName", "userPrincipalName", "mail", "jobTitle"]
SEARCH_SELECT_FIELDS = ["id", "displayName", "userPrincipalName", "mail"]
IMAGE_NOT_FOUND = "ImageNotFound"
RESOURCE_NOT_FOUND = "Request_ResourceNotFound"
AUTHORIZATION_REQUEST_DENIED = "Authorization_RequestDenied"


class DirectoryAccessDeniedError(Exception):
    """Raised when Graph refuses an operation for lack of privileges."""


# ── Request configuration ──────────────────────────────────────────────────


def _groups_request_configuration() -> Any:
    from kiota_abstractions.base_request_configuration import RequestConfiguration
    from msgraph.generated.groups.groups_request_builder import GroupsRequestBuilder

    query = GroupsRequestBuilder.GroupsRequestBuilderGetQueryParameters(
        select=GROUP_SELECT_FIELDS,
        orderby=["displayName"],
        top=GROUP_PAGE_SIZE,
    )
    return RequestConfiguration(query_parameters=query)


def _search_filter(term: str) -> str:
    # OData string literals escape a quote by doubling it
    literal = term.replace("'", "''")
    return " or ".join(
        f"startswith({prop},'{literal}')" for prop in ("displayName", "userPrincipalName", "mail")
    )


def _user_search_request_configuration(term: str) -> Any:
    from kiota_abstractions.base_request_configuration import RequestConfiguration
    from msgraph.generated.users.users_request_builder import UsersRequestBuilder

    query = UsersRequestBuilder.UsersRequestBuilderGetQueryParameters(
        filter=_search_filter(term),
        select=SEARCH_SELECT_FIELDS,
        top=SEARCH_RESULT_LIMIT,
    )
    return RequestConfiguration(query_parameters=query)


def _user_request_configuration() -> Any:
    from kiota_abstractions.base_request_configuration import RequestConfiguration
    from msgraph.generated.users.item.user_item_request_builder import UserItemRequestBuilder

    query = UserItemRequestBuilder.UserItemRequestBuilderGetQueryParameters(
        select=USER_SELECT_FIELDS,
    )
    return RequestConfiguration(query_parameters=query)


# ── Error classification ───────────────────────────────────────────────────


def _is_missing_photo(exc: APIError) -> bool:
    return error_code(exc) == IMAGE_NOT_FOUND or getattr(exc, "response_status_code", None) == 404


def _is_missing_resource(exc: APIError) -> bool:
    return error_code(exc) == RESOURCE_NOT_FOUND or getattr(exc, "response_status_code", None) == 404


def _is_access_denied(exc: APIError) -> bool:
    return error_code(exc) == AUTHORIZATION_REQUEST_DENIED


class DirectoryService:
    """Directory reads for the signed-in user.

    Args:
        client: An authenticated ``GraphServiceClient``.
        wrapper: CAE-aware wrapper holding the scopes and challenge handler.
        max_rows: Cap on the number of users returned by :meth:`get_users`.
        page_timeout: Seconds allowed for each next-page request.
        cancel_event: Set to stop page walks before their next request.
    """

    def __init__(
        self,
        client: Any,
        wrapper: CaeCallWrapper,
        *,
        max_rows: int = DEFAULT_MAX_ROWS,
        page_timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._client = client
        self._wrapper = wrapper
        self.max_rows = max_rows
        self.page_timeout = page_timeout
        self.cancel_event = cancel_event

    async def _walk(
        self,
        builder: Any,
        first_request: Callable[[], Awaitable[Any]],
        max_items: int | None = None,
    ) -> GraphOutcome[list[Any]]:
        """First request and page walk as one wrapped call.

        A claims challenge on any page, not only the first, becomes a
        challenged outcome.
        """

        async def _collect() -> list[Any]:
            response = await first_request()
            return await accumulate_pages(
                GraphPageCursor(response, builder),
                max_items,
                cancel_event=self.cancel_event,
                page_timeout=self.page_timeout,
            )

        return await self._wrapper.call(_collect)

    @trace_graph_call("get_me")
    async def get_me(self) -> GraphOutcome[Any]:
        return await self._wrapper.call(lambda: self._client.me.get())

    @trace_graph_call("get_my_photo")
    async def get_my_photo(self) -> GraphOutcome[bytes]:
        """Return the user's photo bytes; a missing photo is a successful ``None``."""
        try:
            return await self._wrapper.call(lambda: self._client.me.photo.content.get())
        except APIError as exc:
            if _is_missing_photo(exc):
                logger.info("graph.photo.not_found")
                return GraphOutcome.success(None)
            raise

    @trace_graph_call("get_member_of")
    async def get_member_of(self) -> GraphOutcome[list[Any]]:
        builder = self._client.me.member_of
        first = await self._wrapper.call(lambda: builder.get())
        if not first.ok:
            return first
        return await collect_groups(
            GraphPageCursor(first.value, builder),
            cancel_event=self.cancel_event,
            page_timeout=self.page_timeout,
        )

    @trace_graph_call("get_users")
    async def get_users(self) -> GraphOutcome[list[Any]]:
        builder = self._client.users
        return await self._walk(builder, lambda: builder.get(), self.max_rows)

    @trace_graph_call("search_users")
    async def search_users(self, term: str) -> GraphOutcome[list[Any]]:
        """Users whose display name, UPN or mail starts with *term*.

        Raises:
            ValueError: For a blank *term*.
            DirectoryAccessDeniedError: When the caller may not list users.
        """
        term = term.strip()
        if not term:
            raise ValueError("Search term must not be blank")

        builder = self._client.users
        config = _user_search_request_configuration(term)
        try:
            outcome = await self._walk(
                builder,
                lambda: builder.get(request_configuration=config),
                SEARCH_RESULT_LIMIT,
            )
        except APIError as exc:
            if _is_access_denied(exc):
                logger.warning("graph.users.search_denied")
                raise DirectoryAccessDeniedError(
                    "Insufficient privileges to search users; admin consent is required"
                ) from exc
            raise

        if outcome.ok:
            logger.info("graph.users.search", results=len(outcome.value or []))
        return outcome

    @trace_graph_call("get_user")
    async def get_user(self, user_id: str) -> GraphOutcome[Any]:
        """A single user by object ID or UPN; an unknown user is a successful ``None``."""
        config = _user_request_configuration()
        try:
            return await self._wrapper.call(
                lambda: self._client.users.by_user_id(user_id).get(request_configuration=config)
            )
        except APIError as exc:
            if _is_missing_resource(exc):
                logger.info("graph.user.not_found")
                return GraphOutcome.success(None)
            raise

    @trace_graph_call("get_groups")
    async def get_groups(self) -> GraphOutcome[list[Any]]:
        builder = self._client.groups
        config = _groups_request_configuration()
        outcome = await self._walk(builder, lambda: builder.get(request_configuration=config))
        if outcome.ok:
            logger.info("graph.groups.retrieved", count=len(outcome.value or []))
        return outcome

    # ── FIDO2 security keys ────────────────────────────────────────────────

    def _fido2_methods(self, user_id: str | None) -> Any:
        owner = self._client.me if user_id is None else self._client.users.by_user_id(user_id)
        return owner.authentication.fido2_methods

    @trace_graph_call("list_fido2_methods")
    async def list_fido2_methods(self, user_id: str | None = None) -> GraphOutcome[list[Any]]:
        """FIDO2 methods registered for *user_id*, or for the signed-in user."""
        builder = self._fido2_methods(user_id)
        try:
            return await self._walk(builder, lambda: builder.get())
        except APIError as exc:
            if _is_access_denied(exc):
                raise DirectoryAccessDeniedError(
                    "Insufficient privileges to read authentication methods"
                ) from exc
            raise

    @trace_graph_call("delete_fido2_method")
    async def delete_fido2_method(self, user_id: str, method_id: str) -> GraphOutcome[bool]:
        """Remove one FIDO2 method; ``False`` when it does not exist."""
        item = self._fido2_methods(user_id).by_fido2_authentication_method_id(method_id)
        try:
            outcome = await self._wrapper.call(lambda: item.delete())
        except APIError as exc:
            if _is_missing_resource(exc):
                logger.info("graph.fido2.not_found")
                return GraphOutcome.success(False)
            if _is_access_denied(exc):
                raise DirectoryAccessDeniedError(
                    "Insufficient privileges to delete authentication methods"
                ) from exc
            raise

        if not outcome.ok:
            return outcome
        logger.info("graph.fido2.deleted")
        return GraphOutcome.success(True)
