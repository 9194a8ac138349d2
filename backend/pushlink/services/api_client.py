"""REST client for the push service."""
import logging
from typing import Any, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ..config import settings
from ..errors import AuthError, FetchError, RegistrationError
from ..schemas import Device, DeviceIdentity, DeviceRegister, Push, PushCreate, UserProfile, filter_displayable

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def _error_message(response: httpx.Response) -> str:
    """Extract the service's error message from a failed response."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        message = data["error"].get("message")
        if message:
            return message
    return response.reason_phrase or "request failed"


class PushApiClient:
    """Client for the service's REST API, authenticated with one access token.

    A new ``httpx.AsyncClient`` is opened per call. ``transport`` is passed
    through to it, which lets tests substitute ``httpx.MockTransport``.
    """

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Access-Token": self.api_key},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, error_cls=FetchError, **kwargs) -> httpx.Response:
        """Perform a request, raising ``error_cls`` on transport errors or non-2xx status."""
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise error_cls(f"{method} {path} failed: {e}") from e

        if not response.is_success:
            message = _error_message(response)
            raise error_cls(f"{method} {path} failed: {message} ({response.status_code})", response.status_code)

        return response

    @staticmethod
    def _json(response: httpx.Response, error_cls=FetchError) -> Any:
        """Decode a successful response body, raising ``error_cls`` if it is not JSON."""
        try:
            return response.json()
        except ValueError as e:
            raise error_cls(f"Unreadable response from {response.request.url.path}: {e}", response.status_code) from e

    @staticmethod
    def _parse(model: Type[T], data: Any, error_cls=FetchError) -> T:
        """Validate service data, raising ``error_cls`` if it has an unexpected shape."""
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise error_cls(f"Unexpected {model.__name__} data: {e.error_count()} validation errors") from e

    def _items(self, response: httpx.Response, key: str) -> list:
        data = self._json(response)
        items = data.get(key, []) if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise FetchError(f"Unexpected response from {response.request.url.path}: no {key} list", response.status_code)
        return items

    async def fetch_profile(self) -> UserProfile:
        """Get the account profile. Also used to validate a token."""
        response = await self._request("GET", "/users/me", error_cls=AuthError)
        return self._parse(UserProfile, self._json(response))

    async def fetch_active_devices(self) -> List[Device]:
        """Get the account's devices, keeping only active ones."""
        response = await self._request("GET", "/devices")
        devices = [self._parse(Device, item) for item in self._items(response, "devices")]
        return [device for device in devices if device.is_active]

    async def fetch_recent_pushes(self, limit: Optional[int] = None) -> List[Push]:
        """Get the most recent pushes that have something to display."""
        limit = limit or settings.recent_push_limit
        response = await self._request("GET", "/pushes", params={"limit": limit})
        pushes = [self._parse(Push, item) for item in self._items(response, "pushes")]
        return filter_displayable(pushes)

    async def register_device(self, nickname: str) -> DeviceIdentity:
        """Register this installation as a new device."""
        body = DeviceRegister(nickname=nickname).model_dump()
        response = await self._request("POST", "/devices", error_cls=RegistrationError, json=body)

        data = self._json(response, RegistrationError)
        if not isinstance(data, dict) or not data.get("iden"):
            raise RegistrationError("Failed to register device: response has no device id")

        logger.info(f"Device registered with iden: {data['iden']}")
        return DeviceIdentity(id=data["iden"], nickname=data.get("nickname") or nickname)

    async def rename_device(self, device_id: str, nickname: str) -> bool:
        """Update a device's nickname. Failures are logged, not raised."""
        try:
            await self._request("POST", f"/devices/{device_id}", json={"nickname": nickname})
        except FetchError as e:
            logger.error(f"Error updating device nickname: {e}")
            return False

        logger.info(f"Device nickname updated to: {nickname}")
        return True

    async def send_push(self, payload: PushCreate, source_device_id: Optional[str]) -> Push:
        """Create a push on behalf of this device."""
        response = await self._request("POST", "/pushes", json=payload.to_request(source_device_id))
        return self._parse(Push, self._json(response))
