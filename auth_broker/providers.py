"""
Identity providers: immutable descriptors, the registry built once at startup, and one
user-info response variant per provider that normalizes into UserInfo.
"""
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from email.utils import parseaddr
from types import MappingProxyType
from typing import Any

from auth_broker import config


@dataclass(frozen=True)
class UserInfo:
    id: str
    display_name: str
    email: str


def _valid_email(value: str) -> bool:
    _, addr = parseaddr(value)
    local, sep, domain = addr.rpartition("@")
    return bool(sep and local and domain) and " " not in addr


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


class ProviderResponse(ABC):
    """A provider's raw user-info JSON; subclasses know its shape."""

    def __init__(self, payload: Mapping[str, Any]):
        self.payload = payload if isinstance(payload, Mapping) else {}

    @abstractmethod
    def to_user_info(self) -> UserInfo:
        """Return the normalized record or raise ValueError naming the missing field."""


class SpotifyUserResponse(ProviderResponse):
    """Flat {"id", "display_name", "email"} from GET /v1/me."""

    def to_user_info(self) -> UserInfo:
        user_id = _text(self.payload.get("id"))
        display_name = _text(self.payload.get("display_name"))
        email = _text(self.payload.get("email"))
        if not user_id:
            raise ValueError("user ID is missing in Spotify response")
        if not display_name:
            raise ValueError("display name is missing in Spotify response")
        if not email or not _valid_email(email):
            raise ValueError("invalid or missing email in Spotify response")
        return UserInfo(id=user_id, display_name=display_name, email=email)


class TidalUserResponse(ProviderResponse):
    """JSON:API document {"data": {"id", "attributes": {"username", "email", ...}}}."""

    def to_user_info(self) -> UserInfo:
        data = self.payload.get("data")
        data = data if isinstance(data, Mapping) else {}
        attributes = data.get("attributes")
        attributes = attributes if isinstance(attributes, Mapping) else {}
        user_id = _text(data.get("id"))
        username = _text(attributes.get("username"))
        email = _text(attributes.get("email"))
        if not user_id:
            raise ValueError("user ID is missing in Tidal response")
        if not username:
            raise ValueError("username is missing in Tidal response")
        if not email or not _valid_email(email):
            raise ValueError("invalid or missing email in Tidal response")
        return UserInfo(id=user_id, display_name=username, email=email)


@dataclass(frozen=True)
class ProviderDescriptor:
    name: str
    client_id: str
    client_secret: str
    redirect_url: str
    authorize_url: str
    token_url: str
    userinfo_url: str
    scopes: tuple[str, ...] = ()
    response_type: type[ProviderResponse] = field(default=SpotifyUserResponse, repr=False)

    def parse_user_info(self, payload: Mapping[str, Any]) -> UserInfo:
        return self.response_type(payload).to_user_info()


class ProviderRegistry(Mapping[str, ProviderDescriptor]):
    """Read-only name -> descriptor lookup, passed to the broker at construction."""

    def __init__(self, descriptors: list[ProviderDescriptor] | tuple[ProviderDescriptor, ...] = ()):
        self._providers = MappingProxyType({d.name: d for d in descriptors})

    def __getitem__(self, name: str) -> ProviderDescriptor:
        return self._providers[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)


def spotify_descriptor(client_id: str, client_secret: str, redirect_url: str) -> ProviderDescriptor:
    return ProviderDescriptor(
        name="spotify",
        client_id=client_id,
        client_secret=client_secret,
        redirect_url=redirect_url,
        authorize_url="https://accounts.spotify.com/authorize",
        token_url="https://accounts.spotify.com/api/token",
        userinfo_url="https://api.spotify.com/v1/me",
        scopes=("user-read-email", "user-read-private", "playlist-read-private", "playlist-modify-public"),
        response_type=SpotifyUserResponse,
    )


def tidal_descriptor(client_id: str, client_secret: str, redirect_url: str) -> ProviderDescriptor:
    return ProviderDescriptor(
        name="tidal",
        client_id=client_id,
        client_secret=client_secret,
        redirect_url=redirect_url,
        authorize_url="https://login.tidal.com/authorize",
        token_url="https://auth.tidal.com/v1/oauth2/token",
        userinfo_url="https://openapi.tidal.com/v2/users/me",
        scopes=("user.read", "playlists.read", "playlists.write"),
        response_type=TidalUserResponse,
    )


def registry_from_env() -> ProviderRegistry:
    """Register each provider whose client ID is configured."""
    descriptors = []
    if config.SPOTIFY_CLIENT_ID:
        descriptors.append(
            spotify_descriptor(config.SPOTIFY_CLIENT_ID, config.SPOTIFY_CLIENT_SECRET, config.SPOTIFY_REDIRECT_URL)
        )
    if config.TIDAL_CLIENT_ID:
        descriptors.append(
            tidal_descriptor(config.TIDAL_CLIENT_ID, config.TIDAL_CLIENT_SECRET, config.TIDAL_REDIRECT_URL)
        )
    return ProviderRegistry(descriptors)
