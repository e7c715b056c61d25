"""
GraphQL transport for the remote accounting service.

Session uploads never raise: every HTTP error, GraphQL error or timeout is
logged and reported as False so the caller leaves the rows dirty. Token
refresh and organization lookup raise TransportError instead, since the
caller needs their result to continue.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from ..config.loader import ApiConfig
from ..storage.models import SessionAccountingRow
from ..storage.repository import to_iso
from .errors import AuthenticationError, TransportError

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100

UPSERT_SESSION_MUTATION = """
    mutation UpsertClaudeCodeSession($input: UpsertClaudeCodeSessionInput!) {
        upsertClaudeCodeSession(input: $input) {
            id
        }
    }
"""

UPSERT_SESSIONS_MUTATION = """
    mutation UpsertClaudeCodeSessions($input: UpsertClaudeCodeSessionsInput!) {
        upsertClaudeCodeSessions(input: $input) {
            id
        }
    }
"""

MY_ORGANIZATIONS_QUERY = """
    query MyOrganizations {
        myOrganizations {
            id
            name
        }
    }
"""


class GraphQLResponse(BaseModel):
    data: Optional[Dict[str, Any]] = None
    errors: Optional[List[Any]] = None


class TokenResponse(BaseModel):
    """Token endpoint answer. Unrecognized fields are ignored."""
    access_token: str
    expires_in: Optional[int] = 0
    refresh_token: Optional[str] = None


class Organization(BaseModel):
    id: str
    name: Optional[str] = None


class OrganizationsData(BaseModel):
    myOrganizations: Optional[List[Organization]] = None


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error)


@dataclass(frozen=True)
class Credentials:
    """Request credentials attached to GraphQL calls."""
    access_token: str
    organization_id: Optional[str] = None


@dataclass(frozen=True)
class TokenGrant:
    """Result of a refresh-token exchange."""
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None


def _timestamp(row: SessionAccountingRow) -> str:
    return to_iso(row.created_at).replace("+00:00", "Z")


def session_to_record(row: SessionAccountingRow) -> Dict[str, Any]:
    """Build the per-session fields shared by both upsert mutations."""
    return {
        "sessionId": row.session_id,
        "projectPath": row.project_identifier or row.project_path,
        "co2Grams": row.co2_grams,
        "totalInputTokens": row.input_tokens,
        "totalOutputTokens": row.output_tokens,
        "totalCacheCreationTokens": row.cache_creation_tokens,
        "totalCacheReadTokens": row.cache_read_tokens,
        "energyWh": row.energy_wh,
        "startedAt": _timestamp(row),
    }


class RemoteTransport:
    """Synchronous GraphQL client.

    Args:
        api: Endpoint settings
        client: Optional pre-built httpx client, closed by `close()` only if
            this transport created it
    """

    def __init__(self, api: ApiConfig, client: Optional[httpx.Client] = None):
        self.api = api
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=api.timeout_seconds)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "RemoteTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _headers(self, credentials: Optional[Credentials]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if credentials:
            headers["Authorization"] = f"Bearer {credentials.access_token}"
            if credentials.organization_id:
                headers["x-organization-id"] = credentials.organization_id
        return headers

    def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        credentials: Optional[Credentials] = None
    ) -> Dict[str, Any]:
        """Run a GraphQL operation and return its `data` member.

        Raises:
            TransportError: On HTTP failure, timeout, GraphQL errors or a
                response without data
        """
        try:
            response = self.client.post(
                self.api.graphql_url,
                json={"query": query, "variables": variables or {}},
                headers=self._headers(credentials),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            raise TransportError("API request timed out") from e
        except httpx.HTTPStatusError as e:
            raise TransportError(f"API request failed: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"API request failed: {e}") from e

        try:
            result = GraphQLResponse.model_validate(payload)
        except ValidationError as e:
            raise TransportError(f"Malformed API response: {e.error_count()} error(s)") from e

        if result.errors:
            messages = ", ".join(_error_message(err) for err in result.errors)
            raise TransportError(f"API returned errors: {messages}")

        if result.data is None:
            raise TransportError("API response contained no data")
        return result.data

    def upsert_session(
        self,
        user_id: str,
        user_name: str,
        row: SessionAccountingRow,
        credentials: Optional[Credentials] = None
    ) -> bool:
        """Upload one session. Returns False instead of raising on failure."""
        record = session_to_record(row)
        record["claudeCodeUserId"] = user_id
        record["claudeCodeUserName"] = user_name
        try:
            self.execute(UPSERT_SESSION_MUTATION, {"input": record}, credentials)
        except TransportError as e:
            logger.warning("Sync of session %s failed: %s", row.session_id, e)
            return False

        logger.debug("Synced session %s", row.session_id)
        return True

    def upsert_sessions(
        self,
        user_id: str,
        user_name: str,
        rows: List[SessionAccountingRow],
        credentials: Optional[Credentials] = None
    ) -> bool:
        """Upload up to MAX_BATCH_SIZE sessions in one request.

        An empty batch succeeds without a request; an oversized one fails
        without a request.
        """
        if not rows:
            return True
        if len(rows) > MAX_BATCH_SIZE:
            logger.warning("Batch size %d exceeds limit of %d", len(rows), MAX_BATCH_SIZE)
            return False

        variables = {
            "input": {
                "claudeCodeUserId": user_id,
                "claudeCodeUserName": user_name,
                "sessions": [session_to_record(row) for row in rows],
            }
        }
        try:
            self.execute(UPSERT_SESSIONS_MUTATION, variables, credentials)
        except TransportError as e:
            logger.warning("Batch sync of %d session(s) failed: %s", len(rows), e)
            return False

        logger.debug("Synced %d session(s)", len(rows))
        return True

    def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        Raises:
            TransportError: If the token endpoint fails or answers without an
                access token
            AuthenticationError: If the token endpoint rejects the refresh token
        """
        try:
            response = self.client.post(
                self.api.token_url,
                json={
                    "grant_type": "refresh_token",
                    "client_id": self.api.auth_client_id,
                    "refresh_token": refresh_token,
                },
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (400, 401, 403):
                raise AuthenticationError("Refresh token was rejected; authorize again") from e
            raise TransportError(f"Token refresh failed: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"Token refresh failed: {e}") from e

        try:
            token = TokenResponse.model_validate(payload)
        except ValidationError as e:
            raise TransportError(f"Malformed token refresh response: {e.error_count()} error(s)") from e
        if not token.access_token:
            raise TransportError("Token refresh response missing access_token")

        return TokenGrant(
            access_token=token.access_token,
            expires_in=token.expires_in or 0,
            refresh_token=token.refresh_token or None,
        )

    def fetch_organization_id(self, access_token: str) -> str:
        """Look up the first organization of the authorized user.

        Raises:
            TransportError: If the query fails or returns no organization
        """
        data = self.execute(MY_ORGANIZATIONS_QUERY, credentials=Credentials(access_token))
        try:
            organizations = OrganizationsData.model_validate(data).myOrganizations or []
        except ValidationError as e:
            raise TransportError(f"Malformed organization response: {e.error_count()} error(s)") from e
        if not organizations:
            raise TransportError("No organization found for the authorized user")
        return organizations[0].id
