import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Callable, Optional

import pytest

from main import ExpiryStore, RoleReconciler, TicketRegistry

GUILD_ID = 1000
OTHER_GUILD_ID = 2000
ADMIN_ID = 1
USER_ID = 10
OTHER_USER_ID = 11
ROLE_ID = 500
OTHER_ROLE_ID = 501


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeRoleAuthority:
    """Members keyed by (scope, subject), each holding a set of role ids."""

    def __init__(self) -> None:
        self.members: dict[tuple[int, int], set[int]] = {}
        self.fetch_errors: dict[int, Exception] = {}
        self.remove_errors: dict[tuple[int, int], Exception] = {}
        self.remove_delay: float = 0.0
        self.on_remove: Optional[Callable[[Any, int], None]] = None
        self.fetched: list[tuple[int, int]] = []
        self.added: list[tuple[int, int, int]] = []
        self.removed: list[tuple[int, int, int]] = []

    def add_member(self, scope: int, subject: int, *roles: int) -> None:
        self.members[(scope, subject)] = set(roles)

    async def fetch_member(self, scope: int, subject: int) -> Optional[SimpleNamespace]:
        self.fetched.append((scope, subject))
        if subject in self.fetch_errors:
            raise self.fetch_errors[subject]
        if (roles := self.members.get((scope, subject))) is None:
            return None
        return SimpleNamespace(scope=scope, id=subject, roles=roles)

    def member_has_role(self, member: SimpleNamespace, role: int) -> bool:
        return role in member.roles

    async def add_role(
        self, member: SimpleNamespace, role: int, reason: Optional[str] = None
    ) -> None:
        member.roles.add(role)
        self.added.append((member.scope, member.id, role))

    async def remove_role(
        self, member: SimpleNamespace, role: int, reason: Optional[str] = None
    ) -> None:
        if self.remove_delay:
            await asyncio.sleep(self.remove_delay)
        if self.on_remove:
            self.on_remove(member, role)
        if (member.id, role) in self.remove_errors:
            raise self.remove_errors[(member.id, role)]
        member.roles.discard(role)
        self.removed.append((member.scope, member.id, role))


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[int, str, Optional[str]]] = []
        self.error: Optional[Exception] = None

    async def send_direct_message(
        self, subject: int, content: str, title: Optional[str] = None
    ) -> None:
        if self.error:
            raise self.error
        self.sent.append((subject, content, title))


@pytest.fixture(name="clock")
def fixture_clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture(name="store")
def fixture_store(clock: FakeClock) -> ExpiryStore:
    return ExpiryStore(clock=clock)


@pytest.fixture(name="authority")
def fixture_authority() -> FakeRoleAuthority:
    return FakeRoleAuthority()


@pytest.fixture(name="notifier")
def fixture_notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture(name="reconciler")
def fixture_reconciler(
    store: ExpiryStore,
    authority: FakeRoleAuthority,
    notifier: FakeNotifier,
    clock: FakeClock,
) -> RoleReconciler:
    return RoleReconciler(store, authority, notifier, clock=clock, timeout=0.5)


@pytest.fixture(name="registry")
def fixture_registry() -> TicketRegistry:
    return TicketRegistry()
