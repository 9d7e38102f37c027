"""
Request-scoped inputs the engine reads but does not own.

The host builds one RequestContext per request and hands it to the
Auditor. User lookups for target users (the object of an event) go
through a UserDirectory supplied by the host.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from activity_audit.models.log import utcnow


@dataclass
class UserRecord:
    """A user as seen by the audit engine."""
    id: int = 0
    login: str = ""
    email: str = ""
    display_name: str = ""
    first_name: str = ""
    last_name: str = ""
    nickname: str = ""
    roles: List[str] = field(default_factory=list)
    caps: List[str] = field(default_factory=list)

    @property
    def logged_in(self) -> bool:
        return self.id > 0

    def as_data(self) -> Dict[str, object]:
        return {
            "user_id": self.id,
            "user_login": self.login,
            "email_address": self.email,
            "display_name": self.display_name,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "nickname": self.nickname,
            "roles": self.roles,
        }


ANONYMOUS = UserRecord()


class UserDirectory(Protocol):
    def get_user(self, user_id: int) -> Optional[UserRecord]: ...

    def get_user_by_login(self, login: str) -> Optional[UserRecord]: ...


class InMemoryUserDirectory:
    """UserDirectory backed by a dict, for hosts without a user store."""

    def __init__(self, users: Optional[List[UserRecord]] = None):
        self._users: Dict[int, UserRecord] = {u.id: u for u in users or []}

    def add(self, user: UserRecord) -> None:
        self._users[user.id] = user

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        return self._users.get(user_id)

    def get_user_by_login(self, login: str) -> Optional[UserRecord]:
        for user in self._users.values():
            if user.login == login:
                return user
        return None


@dataclass
class ScreenFlags:
    is_admin: bool = False
    is_user_admin: bool = False
    is_network_admin: bool = False
    is_main_site: bool = True
    is_multisite: bool = False


@dataclass
class DeviceInfo:
    user_agent: str = ""
    browser: str = ""
    browser_version: str = ""
    platform: str = ""
    platform_version: str = ""
    platform_version_name: str = ""
    platform_is_64_bit: bool = False
    is_robot: bool = False
    is_mobile: bool = False


@dataclass
class RequestContext:
    """Everything the engine needs to know about the current request."""
    user: UserRecord = field(default_factory=UserRecord)
    screen: ScreenFlags = field(default_factory=ScreenFlags)
    device: DeviceInfo = field(default_factory=DeviceInfo)
    pagenow: str = ""
    doing_async: bool = False
    client_ip: str = "0.0.0.0"
    client_ips: List[str] = field(default_factory=list)
    referer: str = ""
    request_method: str = "GET"
    server: Dict[str, str] = field(default_factory=dict)
    page_error_code: Optional[int] = None
    blog_id: int = 1
    blog_name: str = ""
    blog_url: str = ""
    clock: Callable[[], datetime] = utcnow

    def now(self) -> datetime:
        return self.clock()

    @property
    def is_public(self) -> bool:
        return not self.screen.is_admin and not self.screen.is_network_admin
