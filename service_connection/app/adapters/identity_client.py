"""
Identity (users) service client for the Connection Service.
"""

from typing import Any, Dict, Iterable, Optional

import httpx

from shared.errors import AuthenticationError, BadGatewayError, RemoteServiceError
from shared.logging import get_logger

from ..models import TokenValidation, UserProfile

SERVICE_NAME = "users-service"


class IdentityClient:
    """Client for communicating with the identity/users service.

    Failures are classified for the caller:

    - network errors and 5xx answers raise ``BadGatewayError`` (502)
    - 4xx answers raise ``RemoteServiceError`` with the remote status and detail
    """

    def __init__(self, users_service_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.users_service_url = users_service_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.logger = get_logger("connection.identity_client")

    async def validate_token(self, token: str, user_id: str) -> TokenValidation:
        """Verify that ``token`` is valid for ``user_id``."""
        response = await self._request(
            "POST", "/tokens/validate",
            expected=(200,),
            json={"token": token, "user_id": user_id},
        )
        payload = self._json(response)

        validation = TokenValidation(
            is_valid=bool(payload.get("is_valid")),
            token_id=_as_str(payload.get("token_id")),
            expires_at=_as_str(payload.get("expires_at")),
            usage_count=payload.get("usage_count"),
            max_uses=payload.get("max_uses"),
            uses_remaining=payload.get("uses_remaining"),
        )

        if not validation.is_valid:
            self.logger.warning("Token validation failed", user_id=user_id)
            raise AuthenticationError("Token validation failed: invalid token")

        return validation

    async def get_user(self, user_id: str) -> UserProfile:
        """Fetch the user's profile (formats, model type, authorization flag)."""
        response = await self._request("GET", f"/users/{user_id}", expected=(200,))
        payload = self._json(response)

        return UserProfile(
            id=str(payload.get("id") or payload.get("user_id") or user_id),
            username=payload.get("username") or "",
            email=payload.get("email") or "",
            model_type=payload.get("model_type") or "",
            inputs_format=payload.get("inputs_format") or "",
            outputs_format=payload.get("outputs_format") or "",
            is_authorized=bool(payload.get("is_authorized", True)),
            created_at=_as_str(payload.get("created_at")),
        )

    async def revoke_authorization(self, user_id: str) -> None:
        """Mark the user as no longer authorized to connect."""
        await self._request(
            "PATCH", f"/users/{user_id}/status",
            expected=(200,),
            json={"is_authorized": False},
        )
        self.logger.info("Revoked user authorization", user_id=user_id)

    async def revoke_token(self, token_id: str, user_id: str) -> None:
        """Revoke the token that opened a session."""
        await self._request(
            "DELETE", f"/tokens/revoke/{token_id}",
            expected=(204,),
            params={"user_id": user_id},
        )
        self.logger.info("Revoked token", user_id=user_id, token_id=token_id)

    async def _request(self, method: str, path: str, expected: Iterable[int],
                       **kwargs: Any) -> httpx.Response:
        """Perform a call and classify the failure modes."""
        try:
            async with httpx.AsyncClient(
                base_url=self.users_service_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            self.logger.error("Users service unreachable", method=method, path=path, error=str(e))
            raise BadGatewayError(f"failed to connect to {SERVICE_NAME}: {e}")

        if response.status_code in expected:
            return response

        if 400 <= response.status_code < 500:
            self.logger.warning(
                "Users service rejected request",
                method=method,
                path=path,
                status_code=response.status_code
            )
            raise RemoteServiceError.from_response(SERVICE_NAME, response.status_code, response.content)

        self.logger.error(
            "Users service error",
            method=method,
            path=path,
            status_code=response.status_code
        )
        raise BadGatewayError(
            f"{SERVICE_NAME} returned status {response.status_code}: {response.text}"
        )

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            raise BadGatewayError(f"{SERVICE_NAME} returned a malformed response")
        if not isinstance(payload, dict):
            raise BadGatewayError(f"{SERVICE_NAME} returned an unexpected payload")
        return payload


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
