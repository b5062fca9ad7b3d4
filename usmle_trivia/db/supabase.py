"""
Supabase HTTP Client

Thin async wrapper around the hosted backend's REST surface:
- PostgREST tables:  /rest/v1/<table>
- PostgREST RPCs:    /rest/v1/rpc/<function>
- GoTrue auth:       /auth/v1/...

Every transport failure and error response is translated into the
typed BackendError hierarchy here, so nothing above this module ever
inspects raw httpx exceptions or status codes.

Filters use PostgREST operator syntax as query parameters:
    {"id": eq("42"), "completed_at": "is.null"}
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from usmle_trivia.backend.base import (
    ApplicationError,
    AuthError,
    BackendError,
    BackendNetworkError,
    BackendTimeoutError,
    NotFoundError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

# PostgREST: "JSON object requested, multiple (or no) rows returned"
NO_ROWS_CODE = "PGRST116"


# ============================================================
# FILTER HELPERS
# ============================================================

def eq(value: Any) -> str:
    return f"eq.{value}"


def _quote(value: Any) -> str:
    text = str(value).replace('"', '\\"')
    return f'"{text}"'


def in_(values: Iterable[Any]) -> str:
    return "in.(" + ",".join(_quote(v) for v in values) + ")"


def not_in(values: Iterable[Any]) -> str:
    return "not." + in_(values)


# ============================================================
# ERROR MAPPING
# ============================================================

def _error_payload(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text or response.reason_phrase}
    if isinstance(body, dict):
        return body
    return {"message": str(body)}


def error_from_response(response: httpx.Response, operation: str) -> BackendError:
    """
    Build the BackendError subclass matching an error response.

    PostgREST bodies look like {"code", "message", "details", "hint"};
    GoTrue bodies use {"error", "error_description"} or {"msg"}.
    """
    payload = _error_payload(response)
    code = payload.get("code") or payload.get("error_code") or payload.get("error")
    message = (
        payload.get("message")
        or payload.get("error_description")
        or payload.get("msg")
        or response.reason_phrase
        or "backend error"
    )
    if payload.get("details"):
        message = f"{message} ({payload['details']})"

    status_code = response.status_code
    kwargs = {"operation": operation, "status_code": status_code, "code": str(code) if code else None}

    if status_code in (401, 403):
        return AuthError(message, **kwargs)
    if status_code == 404 or code == NO_ROWS_CODE:
        return NotFoundError(message, **kwargs)
    if status_code in (408, 504):
        return BackendTimeoutError(message, **kwargs)
    if status_code == 429:
        return RateLimitError(message, **kwargs)
    if status_code in (502, 503):
        return BackendNetworkError(message, **kwargs)
    return ApplicationError(message, **kwargs)


# ============================================================
# CLIENT
# ============================================================

class SupabaseClient:
    """
    Async client for one Supabase project.

    A single instance owns one `httpx.AsyncClient` (connection pool).
    `with_token()` returns lightweight views that share that pool but
    send a user's access token, so row-level security applies.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        access_token: Optional[str] = None,
        timeout: float = 12.0,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            url: Project URL, e.g. "https://abc.supabase.co"
            api_key: Anon key (API) or service-role key (scripts only)
            access_token: User JWT; defaults to the api key itself
            timeout: Per-request timeout in seconds
            http_client: Existing pool to share (used by with_token)
            transport: Custom transport (tests use httpx.MockTransport)
        """
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.url,
            timeout=timeout,
            transport=transport,
        )

    def with_token(self, access_token: Optional[str]) -> "SupabaseClient":
        """Return a view of this client that authenticates as a user."""
        return SupabaseClient(
            self.url,
            self.api_key,
            access_token=access_token,
            http_client=self._http,
        )

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            response = await self._http.request(
                method,
                path,
                params=params,
                json=json,
                headers=headers if headers is not None else self._headers(),
            )
        except httpx.TimeoutException as e:
            raise BackendTimeoutError(f"request timed out: {e}", operation=operation) from e
        except httpx.TransportError as e:
            raise BackendNetworkError(f"network error: {e}", operation=operation) from e

        if response.is_error:
            error = error_from_response(response, operation)
            logger.debug(f"{operation} failed with {response.status_code}: {error.message}")
            raise error
        return response

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ApplicationError(
                "backend returned a non-JSON body", operation=operation
            ) from e

    # -----------------------------
    # Tables
    # -----------------------------
    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Optional[Dict[str, Any]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        operation: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit

        op = operation or f"select {table}"
        response = await self._request("GET", f"/rest/v1/{table}", operation=op, params=params)
        rows = self._json(response, op)
        if not isinstance(rows, list):
            raise ApplicationError("expected a list of rows", operation=op)
        return rows

    async def select_one(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        rows = await self.select(
            table, columns=columns, filters=filters, limit=1, operation=operation
        )
        return rows[0] if rows else None

    async def count(
        self,
        table: str,
        *,
        columns: str = "id",
        filters: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
    ) -> int:
        """Exact row count from the Content-Range header ("0-9/42")."""
        params: Dict[str, Any] = {"select": columns}
        params.update(filters or {})
        op = operation or f"count {table}"
        response = await self._request(
            "HEAD",
            f"/rest/v1/{table}",
            operation=op,
            params=params,
            headers=self._headers({"Prefer": "count=exact"}),
        )
        content_range = response.headers.get("content-range", "")
        total = content_range.rsplit("/", 1)[-1]
        if not total.isdigit():
            raise ApplicationError(
                f"missing row count in Content-Range: {content_range!r}", operation=op
            )
        return int(total)

    async def insert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        *,
        operation: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        op = operation or f"insert {table}"
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            operation=op,
            json=list(rows),
            headers=self._headers({"Prefer": "return=representation"}),
        )
        return self._json(response, op) or []

    async def upsert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        *,
        on_conflict: str,
        operation: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        op = operation or f"upsert {table}"
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            operation=op,
            params={"on_conflict": on_conflict},
            json=list(rows),
            headers=self._headers(
                {"Prefer": "resolution=merge-duplicates,return=representation"}
            ),
        )
        return self._json(response, op) or []

    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        *,
        filters: Dict[str, Any],
        operation: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if not filters:
            # PostgREST would update every row
            raise ValueError("update() requires at least one filter")
        op = operation or f"update {table}"
        response = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            operation=op,
            params=dict(filters),
            json=values,
            headers=self._headers({"Prefer": "return=representation"}),
        )
        return self._json(response, op) or []

    # -----------------------------
    # RPC
    # -----------------------------
    async def rpc(
        self,
        function: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        operation: Optional[str] = None,
    ) -> Any:
        op = operation or function
        response = await self._request(
            "POST",
            f"/rest/v1/rpc/{function}",
            operation=op,
            json=params or {},
        )
        return self._json(response, op)

    # -----------------------------
    # Auth
    # -----------------------------
    async def get_user(self, access_token: str) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            "/auth/v1/user",
            operation="authenticate",
            headers={"apikey": self.api_key, "Authorization": f"Bearer {access_token}"},
        )
        user = self._json(response, "authenticate")
        if not isinstance(user, dict) or "id" not in user:
            raise AuthError("auth service returned no user", operation="authenticate")
        return user

    async def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        """Password grant. Returns the session: access_token, refresh_token, user."""
        try:
            response = await self._request(
                "POST",
                "/auth/v1/token",
                operation="sign_in",
                params={"grant_type": "password"},
                json={"email": email, "password": password},
                headers={"apikey": self.api_key},
            )
        except ApplicationError as e:
            # GoTrue answers bad credentials with 400
            raise AuthError(e.message, operation="sign_in", status_code=e.status_code, code=e.code) from e
        return self._json(response, "sign_in") or {}

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def health(self) -> bool:
        try:
            await self._request(
                "GET", "/rest/v1/", operation="health", headers=self._headers()
            )
            return True
        except BackendError as e:
            logger.error(f"Backend health check failed: {e}")
            return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


__all__ = [
    "SupabaseClient",
    "error_from_response",
    "eq",
    "in_",
    "not_in",
]
