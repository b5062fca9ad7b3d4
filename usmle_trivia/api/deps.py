from fastapi import HTTPException, Depends, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import logging

from usmle_trivia.backend import get_backend as _get_backend
from usmle_trivia.backend.base import AuthError, AuthUser, BackendError, QuizBackend
from usmle_trivia.core.retry import ErrorClass, OperationFailedError, RetryError, RetryPolicy
from usmle_trivia.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

# Security scheme for Swagger UI; optional so guests can play
security = HTTPBearer(auto_error=False)


# =====================================================
# Backend / Registry
# =====================================================
def get_backend() -> QuizBackend:
    return _get_backend()


def get_registry(request: Request) -> SessionRegistry:
    """The SessionRegistry created during app startup."""
    return request.app.state.registry


def get_retry_policy(request: Request) -> RetryPolicy:
    return request.app.state.retry_policy


# =====================================================
# Get Current user
# =====================================================
async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    backend: QuizBackend = Depends(get_backend),
) -> Optional[AuthUser]:
    """
    Resolve the bearer token, if any.

    Raises:
        HTTPException 401: A token was sent but is invalid
        HTTPException 503: The auth service could not be reached
    """
    if credentials is None:
        return None

    try:
        return await backend.authenticate(credentials.credentials)
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"}
        )
    except BackendError as e:
        logger.error(f"Token check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable"
        )


async def get_current_user(
    user: Optional[AuthUser] = Depends(get_optional_user),
) -> AuthUser:
    """
    Dependency that requires a signed-in user.

    Raises:
        HTTPException 401: If the token is missing or invalid
    """
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return user


def get_user_backend(
    user: Optional[AuthUser] = Depends(get_optional_user),
    backend: QuizBackend = Depends(get_backend),
) -> QuizBackend:
    """Backend handle that sends the caller's token (row-level security)."""
    return backend.as_user(user.access_token if user else None)


# =====================================================
# Error mapping
# =====================================================
def backend_http_error(error: RetryError) -> HTTPException:
    """
    HTTPException for a backend call that failed after retries.

    Transient failures are 503 with a Retry-After hint; application
    errors are 502 and name the failing operation.
    """
    if isinstance(error, OperationFailedError) and error.error_class == ErrorClass.APPLICATION:
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Something went wrong ({error.operation})"
        )
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Backend temporarily unavailable, try again",
        headers={"Retry-After": "5"}
    )
