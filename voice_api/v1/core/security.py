import hmac
from dataclasses import dataclass
from uuid import NAMESPACE_DNS, UUID, uuid5

from fastapi import Depends, Header, HTTPException, status

from voice_api.config.settings import AuthMode, Settings, SettingsDep, settings

CALLBACK_API_KEY_HEADER = "X-Webhook-Api-Key"


def string_to_uuid(text: str) -> UUID:
    """Convert a string to a deterministic UUID using namespace DNS."""
    return uuid5(NAMESPACE_DNS, text)


@dataclass
class Principal:
    """Represents the current authenticated user."""

    user_id: str
    roles: list[str]
    email: str | None = None

    @property
    def user_uuid(self) -> UUID:
        """Get the user ID as a UUID for database operations."""
        try:
            return UUID(self.user_id)
        except ValueError:
            return string_to_uuid(self.user_id)


async def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Behavior based on AUTH_MODE:
    - none: Returns dev defaults with admin role
    - dev: Extract the user from the X-User-ID header
    - oidc: token verification lives in the gateway in front of this service
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(user_id=settings.dev_user_id, roles=["admin"])
    elif settings.auth_mode == AuthMode.DEV:
        if not x_user_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-User-ID header is required in dev auth mode",
            )
        return Principal(user_id=x_user_id, roles=["user"])
    elif settings.auth_mode == AuthMode.OIDC:
        raise NotImplementedError("OIDC auth mode is handled by the API gateway")
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


async def verify_callback_api_key(
    api_key: str | None = Header(None, alias=CALLBACK_API_KEY_HEADER),
    config: Settings = SettingsDep,
) -> None:
    """Authenticate completion callbacks from the inference service by shared secret."""
    expected = config.conversion_callback_api_key
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Callback API key is not configured",
        )
    if not api_key or not hmac.compare_digest(api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid callback API key",
        )


# Convenience type aliases for dependency injection
PrincipalDep = Depends(get_principal)
CallbackAuthDep = Depends(verify_callback_api_key)
