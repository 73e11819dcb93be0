import asyncio
import io
import logging
import os
import traceback
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from functools import wraps
from itertools import islice
from logging.handlers import RotatingFileHandler
from typing import (
    Any,
    AsyncGenerator,
    Awaitable,
    Callable,
    Concatenate,
    Coroutine,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    ParamSpec,
    Protocol,
    Tuple,
    TypeVar,
    Union,
)

import aiohttp
import interactions
import orjson
from cachetools import TTLCache
from interactions.api.events import (
    ChannelDelete,
    ExtensionLoad,
    ExtensionUnload,
    MemberAdd,
    MemberRemove,
    Startup,
)
from interactions.client.errors import HTTPException, NotFound
from pydantic import BaseModel, ConfigDict, model_validator

BASE_DIR: str = os.path.dirname(os.path.abspath(__file__))
LOG_FILE: str = os.path.join(BASE_DIR, "assistant.log")

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
formatter = logging.Formatter(
    "%(asctime)s | %(process)d:%(thread)d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s",
    "%Y-%m-%d %H:%M:%S.%f %z",
)
file_handler = RotatingFileHandler(
    LOG_FILE, maxBytes=1024 * 1024, backupCount=1, encoding="utf-8"
)
file_handler.setFormatter(formatter)
logger.addHandler(file_handler)


# Model


T = TypeVar("T")

P = ParamSpec("P")

Clock = Callable[[], datetime]

MIN_GRANT_DAYS: int = 1
MAX_GRANT_DAYS: int = 365
EXPIRING_WINDOW: timedelta = timedelta(hours=24)
RESERVATION_TTL: float = 60.0
DEFAULT_REASON: str = "No reason provided"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssistantError(Exception):
    """Base class for errors raised by the assistant core."""


class ValidationError(AssistantError, ValueError):
    """Caller-supplied parameters violate an invariant; nothing was mutated."""


class AuthorizationError(AssistantError, PermissionError):
    """The actor lacks the privilege required for the operation."""


class ExternalError(AssistantError):
    """A call into Discord failed."""


class NotFoundError(ExternalError):
    """The member, role or channel no longer exists."""


class TransientExternalError(ExternalError):
    """The call failed for a reason that may go away on retry."""


class EmbedColor(Enum):
    OFF = 0x5D5A58
    FATAL = 0xFF4343
    ERROR = 0xE81123
    WARN = 0xFFB900
    INFO = 0x0078D7
    DEBUG = 0x00B7C3
    SUCCESS = 0x00FF00
    TICKET = 0x0099FF


class Outcome(Enum):
    REVOKED = auto()
    CLEANED = auto()
    RETAINED = auto()


class TicketKind(Enum):
    APPLICATION = "create_ticket"
    HELP = "create_ticket_help"


@dataclass
class Config:
    WELCOME_CHANNEL_ID: int = 1467588026086719739
    FAREWELL_CHANNEL_ID: int = 1467588026086719739
    APPLICATION_PANEL_CHANNEL_ID: int = 1467923669186510951
    HELP_PANEL_CHANNEL_ID: int = 1467590287990718655
    APPLICATION_CATEGORY_ID: int = 1467935963018825941
    HELP_CATEGORY_ID: int = 1467973590791094436
    REQUIREMENTS_CHANNEL_ID: int = 1467923593513144320
    STAFF_ROLE_ID: int = 1467935721707802675
    LOG_CHANNEL_ID: Optional[int] = None
    SWEEP_INTERVAL_SECONDS: int = 60
    EXTERNAL_CALL_TIMEOUT: float = 10.0
    COMMUNITY_NAME: str = "ZETAS"


class Grant(BaseModel):
    model_config = ConfigDict(frozen=True)

    scope: int
    subject: int
    role: int
    granted_at: datetime
    expires_at: datetime
    granted_by: int
    reason: str = DEFAULT_REASON

    @model_validator(mode="after")
    def check_window(self) -> "Grant":
        if self.expires_at <= self.granted_at:
            raise ValueError("expires_at must be later than granted_at")
        return self

    @property
    def key(self) -> Tuple[int, int, int]:
        return self.scope, self.subject, self.role

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def remaining(self, now: datetime) -> timedelta:
        return max(self.expires_at - now, timedelta(0))


@dataclass(frozen=True)
class StoreStats:
    total_grants: int
    active_grants: int
    expiring_soon: int
    subjects: int


class ExpiryStore:
    """In-memory index of temporary role grants, grouped by scope then subject.

    Nothing here touches Discord. Every method is synchronous, so a mutation
    can never interleave with another coroutine on the event loop.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock: Clock = clock
        self._grants: Dict[int, Dict[int, Dict[int, Grant]]] = {}

    def __len__(self) -> int:
        return sum(
            len(roles) for subjects in self._grants.values() for roles in subjects.values()
        )

    @property
    def scopes(self) -> FrozenSet[int]:
        return frozenset(self._grants)

    @staticmethod
    def validate_duration(duration_days: Any) -> int:
        if isinstance(duration_days, bool) or not isinstance(duration_days, int):
            raise ValidationError("Duration must be a whole number of days.")
        if not MIN_GRANT_DAYS <= duration_days <= MAX_GRANT_DAYS:
            raise ValidationError(
                f"Duration must be between {MIN_GRANT_DAYS} and {MAX_GRANT_DAYS} days."
            )
        return duration_days

    def put(
        self,
        scope: int,
        subject: int,
        role: int,
        duration_days: int,
        granted_by: int,
        reason: Optional[str] = None,
    ) -> Grant:
        days = self.validate_duration(duration_days)
        granted_at = self.clock()
        grant = Grant(
            scope=scope,
            subject=subject,
            role=role,
            granted_at=granted_at,
            expires_at=granted_at + timedelta(days=days),
            granted_by=granted_by,
            reason=(reason or "").strip() or DEFAULT_REASON,
        )
        roles = self._grants.setdefault(scope, {}).setdefault(subject, {})
        if role in roles:
            logger.info(f"Replacing existing grant for {grant.key}")
        roles[role] = grant
        return grant

    def get(self, scope: int, subject: int, role: int) -> Optional[Grant]:
        return self._grants.get(scope, {}).get(subject, {}).get(role)

    def remove_one(self, scope: int, subject: int, role: int) -> bool:
        subjects = self._grants.get(scope)
        if subjects is None or role not in (roles := subjects.get(subject, {})):
            return False

        del roles[role]
        if not roles:
            del subjects[subject]
        if not subjects:
            del self._grants[scope]
        return True

    def list_for_subject(self, scope: int, subject: int) -> Tuple[Grant, ...]:
        return tuple(self._grants.get(scope, {}).get(subject, {}).values())

    def list_expired_as_of(self, timestamp: datetime) -> Tuple[Grant, ...]:
        return tuple(
            grant
            for subjects in self._grants.values()
            for roles in subjects.values()
            for grant in roles.values()
            if grant.is_expired(timestamp)
        )

    def stats(self, scope: int, now: Optional[datetime] = None) -> StoreStats:
        now = now or self.clock()
        subjects = self._grants.get(scope, {})
        grants = [grant for roles in subjects.values() for grant in roles.values()]
        active = [grant for grant in grants if grant.expires_at > now]
        return StoreStats(
            total_grants=len(grants),
            active_grants=len(active),
            expiring_soon=sum(
                1 for grant in active if grant.expires_at <= now + EXPIRING_WINDOW
            ),
            subjects=len(subjects),
        )

    def snapshot(self, scope: int) -> List[Dict[str, Any]]:
        return [
            grant.model_dump(mode="json")
            for roles in self._grants.get(scope, {}).values()
            for grant in sorted(roles.values(), key=lambda g: g.expires_at)
        ]


class TicketRegistry:
    """Maps a requester to their single open ticket channel.

    The registry never checks whether a channel still exists. Callers that
    find a dead channel must `close` the subject before treating it as free.
    """

    def __init__(self, reservation_ttl: float = RESERVATION_TTL) -> None:
        self._channels: Dict[int, int] = {}
        self._pending: TTLCache = TTLCache(maxsize=1024, ttl=reservation_ttl)

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, subject: object) -> bool:
        return subject in self._channels

    def open(self, subject: int, channel: int) -> None:
        self._pending.pop(subject, None)
        self._channels[subject] = channel

    def lookup(self, subject: int) -> Optional[int]:
        return self._channels.get(subject)

    def close(self, subject: int) -> None:
        self._pending.pop(subject, None)
        self._channels.pop(subject, None)

    def rebuild(self, entries: Iterable[Tuple[int, int]]) -> None:
        self._channels = dict(entries)
        self._pending.clear()

    def reserve(self, subject: int) -> bool:
        if subject in self._channels or subject in self._pending:
            return False
        self._pending[subject] = True
        return True

    def release(self, subject: int) -> None:
        self._pending.pop(subject, None)

    def subject_for(self, channel: int) -> Optional[int]:
        return next(
            (subject for subject, ch in self._channels.items() if ch == channel), None
        )


def parse_ticket_owner(topic: Optional[str]) -> Optional[int]:
    topic = (topic or "").strip()
    if topic.isascii() and topic.isdecimal():
        return int(topic)
    return None


def format_remaining(delta: timedelta) -> str:
    total_minutes = int(delta.total_seconds()) // 60
    if total_minutes <= 0:
        return "less than a minute"
    days, rest = divmod(total_minutes, 1440)
    hours, minutes = divmod(rest, 60)
    return " ".join(
        f"{value}{unit}"
        for value, unit in ((days, "d"), (hours, "h"), (minutes, "m"))
        if value
    )


# Controller


class RoleAuthority(Protocol):
    async def fetch_member(self, scope: int, subject: int) -> Optional[Any]: ...

    def member_has_role(self, member: Any, role: int) -> bool: ...

    async def add_role(
        self, member: Any, role: int, reason: Optional[str] = None
    ) -> None: ...

    async def remove_role(
        self, member: Any, role: int, reason: Optional[str] = None
    ) -> None: ...


class Notifier(Protocol):
    async def send_direct_message(
        self, subject: int, content: str, title: Optional[str] = None
    ) -> None: ...


async def call_with_timeout(awaitable: Awaitable[T], timeout: float) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientExternalError(f"External call timed out after {timeout}s") from e


@asynccontextmanager
async def classify_errors(operation: str) -> AsyncGenerator[None, None]:
    try:
        yield
    except NotFound as e:
        raise NotFoundError(f"{operation}: target no longer exists") from e
    except (HTTPException, aiohttp.ClientError) as e:
        raise TransientExternalError(f"{operation}: {e!r}") from e


class GuildRoleAuthority:
    def __init__(self, bot: interactions.Client) -> None:
        self.bot: interactions.Client = bot

    async def fetch_member(
        self, scope: int, subject: int
    ) -> Optional[interactions.Member]:
        try:
            async with classify_errors(f"fetch member {subject} in {scope}"):
                if not (guild := await self.bot.fetch_guild(scope)):
                    return None
                return await guild.fetch_member(subject)
        except NotFoundError:
            return None

    @staticmethod
    def member_has_role(member: interactions.Member, role: int) -> bool:
        return member.has_role(role)

    async def add_role(
        self, member: interactions.Member, role: int, reason: Optional[str] = None
    ) -> None:
        async with classify_errors(f"add role {role} to {member.id}"):
            await member.add_role(role, reason=reason)

    async def remove_role(
        self, member: interactions.Member, role: int, reason: Optional[str] = None
    ) -> None:
        async with classify_errors(f"remove role {role} from {member.id}"):
            await member.remove_role(role, reason=reason)


class DirectMessageNotifier:
    def __init__(self, bot: interactions.Client, footer: str) -> None:
        self.bot: interactions.Client = bot
        self.footer: str = footer

    async def send_direct_message(
        self, subject: int, content: str, title: Optional[str] = None
    ) -> None:
        async with classify_errors(f"direct message {subject}"):
            if not (user := await self.bot.fetch_user(subject)):
                raise NotFoundError(f"User {subject} not found")
            embed = interactions.Embed(
                title=title or "Notification",
                description=content,
                color=EmbedColor.INFO.value,
            )
            embed.timestamp = utcnow()
            embed.set_footer(text=self.footer)
            await user.send(embed=embed)
        logger.debug(f"Sent notification to member {subject}")


@dataclass
class SweepReport:
    revoked: int = 0
    cleaned: int = 0
    retained: int = 0
    notified: int = 0

    @property
    def removed(self) -> int:
        return self.revoked + self.cleaned

    def __bool__(self) -> bool:
        return bool(self.removed or self.retained)


class RoleReconciler:
    """Turns expired grants into revoked roles.

    A grant leaves the store only once Discord is known not to reflect it any
    more: the role was removed, or the member or role is gone. Anything else
    keeps the grant for the next sweep.
    """

    def __init__(
        self,
        store: ExpiryStore,
        authority: RoleAuthority,
        notifier: Notifier,
        clock: Clock = utcnow,
        timeout: float = 10.0,
    ) -> None:
        self.store: ExpiryStore = store
        self.authority: RoleAuthority = authority
        self.notifier: Notifier = notifier
        self.clock: Clock = clock
        self.timeout: float = timeout

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        now = self.clock()

        for grant in self.store.list_expired_as_of(now):
            try:
                outcome = await self.reconcile_grant(grant)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Unexpected error reconciling grant {grant.key}: {e!r}",
                    exc_info=True,
                )
                outcome = Outcome.RETAINED

            match outcome:
                case Outcome.RETAINED:
                    report.retained += 1
                    continue
                case Outcome.REVOKED:
                    report.revoked += 1
                case Outcome.CLEANED:
                    report.cleaned += 1

            # A grant re-issued while we awaited Discord must survive.
            if self.store.get(*grant.key) is not grant:
                logger.info(f"Grant {grant.key} was re-issued during the sweep")
                continue
            self.store.remove_one(*grant.key)
            if await self.notify_expiry(grant):
                report.notified += 1

        if report:
            logger.info(
                f"Sweep finished: {report.revoked} revoked, {report.cleaned} cleaned up, "
                f"{report.retained} retained for retry"
            )
        else:
            logger.debug("No expired grants at this time")
        return report

    async def reconcile_grant(self, grant: Grant) -> Outcome:
        try:
            member = await call_with_timeout(
                self.authority.fetch_member(grant.scope, grant.subject), self.timeout
            )
        except NotFoundError:
            member = None
        except TransientExternalError as e:
            logger.warning(f"Could not resolve member for {grant.key}, will retry: {e}")
            return Outcome.RETAINED

        if member is None:
            logger.info(f"Member {grant.subject} left scope {grant.scope}, dropping grant")
            return Outcome.CLEANED

        if not self.authority.member_has_role(member, grant.role):
            logger.info(f"Role already absent for {grant.key}, dropping grant")
            return Outcome.CLEANED

        try:
            await call_with_timeout(
                self.authority.remove_role(
                    member, grant.role, reason="Temporary role expired"
                ),
                self.timeout,
            )
        except NotFoundError:
            logger.info(f"Role or member gone while revoking {grant.key}")
            return Outcome.CLEANED
        except TransientExternalError as e:
            logger.warning(f"Revocation failed for {grant.key}, will retry: {e}")
            return Outcome.RETAINED

        logger.info(f"Revoked expired role {grant.role} from {grant.subject}")
        return Outcome.REVOKED

    async def notify_expiry(self, grant: Grant) -> bool:
        try:
            await call_with_timeout(
                self.notifier.send_direct_message(
                    grant.subject,
                    f"Your temporary role <@&{grant.role}> has expired and was removed.",
                    title="Temporary role expired",
                ),
                self.timeout,
            )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to notify {grant.subject} about expiry: {e!r}")
            return False


class Assistant(interactions.Extension):
    def __init__(self, bot: interactions.Client, config: Optional[Config] = None):
        self.bot: interactions.Client = bot
        self.config: Config = config or Config()
        self.store: ExpiryStore = ExpiryStore()
        self.ticket_registry: TicketRegistry = TicketRegistry()
        self.role_authority: RoleAuthority = GuildRoleAuthority(bot)
        self.notifier: Notifier = DirectMessageNotifier(
            bot, f"{self.config.COMMUNITY_NAME} Community"
        )
        self.reconciler: RoleReconciler = RoleReconciler(
            self.store,
            self.role_authority,
            self.notifier,
            timeout=self.config.EXTERNAL_CALL_TIMEOUT,
        )

    # Decorator

    ContextType = TypeVar("ContextType", bound=interactions.BaseContext)

    @staticmethod
    def error_handler(
        func: Callable[Concatenate[Any, ContextType, P], Coroutine[Any, Any, T]]
    ) -> Callable[Concatenate[Any, ContextType, P], Coroutine[Any, Any, Optional[T]]]:
        @wraps(func)
        async def wrapper(
            self, ctx: interactions.BaseContext, *args: P.args, **kwargs: P.kwargs
        ) -> Optional[T]:
            try:
                result = await asyncio.shield(func(self, ctx, *args, **kwargs))
                logger.info(f"`{func.__name__}` completed successfully: {result}")
                return result
            except asyncio.CancelledError as ce:
                logger.warning(
                    f"{func.__name__} was cancelled",
                    extra={"exc_info": True, "stack_info": True},
                )
                raise ce from None
            except (ValidationError, AuthorizationError) as e:
                logger.info(f"`{func.__name__}` rejected: {e}")
                await self.send_error(ctx, str(e))
            except ExternalError as e:
                logger.warning(f"`{func.__name__}` failed on Discord: {e!r}")
                await self.send_error(
                    ctx, "Discord did not accept the request. Please try again later."
                )
            except Exception as e:
                error_msg = f"Error in {func.__name__}: {e!r}\n{traceback.format_exc()}"
                logger.exception(error_msg)
                await self.send_error(ctx, "An unexpected error occurred.")
            return None

        return wrapper

    # Validators

    @staticmethod
    def require_administrator(ctx: interactions.BaseContext) -> None:
        if not ctx.author.guild_permissions & interactions.Permissions.ADMINISTRATOR:
            raise AuthorizationError(
                "You need Administrator permission to use this command."
            )

    def require_staff(self, ctx: interactions.BaseContext) -> None:
        if not ctx.author.has_role(self.config.STAFF_ROLE_ID):
            raise AuthorizationError("Only Administration can close tickets!")

    # View methods

    async def create_embed(
        self,
        title: str,
        description: str = "",
        color: Union[EmbedColor, int] = EmbedColor.INFO,
        fields: Optional[List[Dict[str, str]]] = None,
    ) -> interactions.Embed:
        color_value: int = color.value if isinstance(color, EmbedColor) else color

        embed: interactions.Embed = interactions.Embed(
            title=title, description=description, color=color_value
        )

        if fields:
            for field in fields:
                embed.add_field(
                    name=field.get("name", ""),
                    value=field.get("value", ""),
                    inline=field.get("inline", True),
                )

        embed.timestamp = utcnow()
        embed.set_footer(text=f"{self.config.COMMUNITY_NAME} Community")
        return embed

    async def send_response(
        self,
        ctx: Optional[
            Union[
                interactions.SlashContext,
                interactions.InteractionContext,
                interactions.ComponentContext,
            ]
        ],
        title: str,
        message: str,
        color: EmbedColor,
        log_to_channel: bool = True,
        ephemeral: bool = True,
    ) -> None:
        embed: interactions.Embed = await self.create_embed(title, message, color)

        if ctx:
            await ctx.send(embed=embed, ephemeral=ephemeral)

        if log_to_channel and self.config.LOG_CHANNEL_ID:
            await self.send_to_channel(self.config.LOG_CHANNEL_ID, embed)

    async def send_to_channel(self, channel_id: int, embed: interactions.Embed) -> None:
        try:
            channel = await self.bot.fetch_channel(channel_id)

            if not isinstance(channel, interactions.GuildText):
                logger.error(f"Channel ID {channel_id} is not a valid text channel.")
                return

            await channel.send(embed=embed)

        except NotFound as nf:
            logger.error(f"Channel with ID {channel_id} not found: {nf!r}")
        except Exception as e:
            logger.error(f"Error sending message to channel {channel_id}: {e!r}")

    async def send_error(
        self,
        ctx: Optional[
            Union[
                interactions.SlashContext,
                interactions.InteractionContext,
                interactions.ComponentContext,
            ]
        ],
        message: str,
        log_to_channel: bool = False,
        ephemeral: bool = True,
    ) -> None:
        await self.send_response(
            ctx, "Error", message, EmbedColor.ERROR, log_to_channel, ephemeral
        )

    async def send_success(
        self,
        ctx: Optional[
            Union[
                interactions.SlashContext,
                interactions.InteractionContext,
                interactions.ComponentContext,
            ]
        ],
        message: str,
        log_to_channel: bool = True,
        ephemeral: bool = True,
    ) -> None:
        await self.send_response(
            ctx, "Success", message, EmbedColor.INFO, log_to_channel, ephemeral
        )

    # Greetings

    @interactions.listen(MemberAdd)
    async def on_member_add(self, event: MemberAdd) -> None:
        member = event.member
        embed = await self.create_embed(
            title=f"👋 Welcome to {self.config.COMMUNITY_NAME} server!",
            description=f"Hi {member.mention}, it's nice to see you on our server!",
            color=EmbedColor.SUCCESS,
        )
        embed.set_thumbnail(url=member.display_avatar.url)
        await self.send_to_channel(self.config.WELCOME_CHANNEL_ID, embed)
        logger.info(f"Greeted new member {member.id}")

    @interactions.listen(MemberRemove)
    async def on_member_remove(self, event: MemberRemove) -> None:
        member = event.member
        embed = await self.create_embed(
            title=f"Goodbye from {self.config.COMMUNITY_NAME}",
            description=f"**{member.display_name}** has left the server. We hope to see you again!",
            color=EmbedColor.WARN,
        )
        embed.set_thumbnail(url=member.display_avatar.url)
        await self.send_to_channel(self.config.FAREWELL_CHANNEL_ID, embed)
        logger.info(f"Said farewell to member {member.id}")

    # Command groups

    module_base = interactions.SlashCommand(
        name="assistant", description="Community assistant commands"
    )
    module_group_temprole: interactions.SlashCommand = module_base.group(
        name="temprole", description="Temporary role management"
    )
    module_group_tickets: interactions.SlashCommand = module_base.group(
        name="tickets", description="Support tickets management"
    )

    # Temporary role commands

    @module_group_temprole.subcommand(
        "grant", sub_cmd_description="Grant a role for a limited number of days"
    )
    @interactions.slash_default_member_permission(
        interactions.Permissions.ADMINISTRATOR
    )
    @interactions.slash_option(
        name="user",
        description="Member",
        required=True,
        opt_type=interactions.OptionType.USER,
    )
    @interactions.slash_option(
        name="role",
        description="Role",
        required=True,
        opt_type=interactions.OptionType.ROLE,
    )
    @interactions.slash_option(
        name="days",
        description="Duration in days",
        required=True,
        opt_type=interactions.OptionType.INTEGER,
        min_value=MIN_GRANT_DAYS,
        max_value=MAX_GRANT_DAYS,
    )
    @interactions.slash_option(
        name="reason",
        description="Reason",
        required=False,
        opt_type=interactions.OptionType.STRING,
    )
    @error_handler
    async def grant_temporary_role(
        self,
        ctx: interactions.SlashContext,
        user: interactions.Member,
        role: interactions.Role,
        days: int,
        reason: Optional[str] = None,
    ) -> str:
        self.require_administrator(ctx)
        ExpiryStore.validate_duration(days)

        try:
            await call_with_timeout(
                self.role_authority.add_role(
                    user, role.id, reason=f"Temporary role granted by {ctx.author.id}"
                ),
                self.config.EXTERNAL_CALL_TIMEOUT,
            )
        except NotFoundError:
            raise ValidationError("That member or role no longer exists.") from None

        grant = self.store.put(ctx.guild_id, user.id, role.id, days, ctx.author.id, reason)
        expires = int(grant.expires_at.timestamp())
        await self.send_success(
            ctx,
            f"{ctx.author.mention} granted {role.mention} to {user.mention} until "
            f"<t:{expires}:F> (<t:{expires}:R>). Reason: {grant.reason}",
            ephemeral=False,
        )
        return f"Granted {role.id} to {user.id} for {days} days"

    @module_group_temprole.subcommand(
        "list", sub_cmd_description="List your temporary roles"
    )
    @error_handler
    async def list_my_roles(self, ctx: interactions.SlashContext) -> str:
        now = utcnow()
        grants = sorted(
            self.store.list_for_subject(ctx.guild_id, ctx.author.id),
            key=lambda g: g.expires_at,
        )
        if not grants:
            await self.send_response(
                ctx,
                "Temporary roles",
                "You have no temporary roles.",
                EmbedColor.INFO,
                log_to_channel=False,
            )
            return "No grants"

        lines = "\n".join(
            f"- <@&{g.role}>: {format_remaining(g.remaining(now))} left "
            f"(<t:{int(g.expires_at.timestamp())}:R>)"
            for g in islice(grants, 25)
        )
        await self.send_response(
            ctx, "Temporary roles", lines, EmbedColor.INFO, log_to_channel=False
        )
        return f"Listed {len(grants)} grants"

    @module_group_temprole.subcommand(
        "remaining", sub_cmd_description="Show the time left on a temporary role"
    )
    @interactions.slash_option(
        name="user",
        description="Member",
        required=True,
        opt_type=interactions.OptionType.USER,
    )
    @interactions.slash_option(
        name="role",
        description="Role",
        required=True,
        opt_type=interactions.OptionType.ROLE,
    )
    @error_handler
    async def role_time_remaining(
        self,
        ctx: interactions.SlashContext,
        user: interactions.Member,
        role: interactions.Role,
    ) -> str:
        if not (grant := self.store.get(ctx.guild_id, user.id, role.id)):
            raise ValidationError(
                f"{user.mention} has no temporary grant for {role.mention}."
            )

        remaining = format_remaining(grant.remaining(utcnow()))
        expires = int(grant.expires_at.timestamp())
        await self.send_response(
            ctx,
            "Time remaining",
            f"{role.mention} for {user.mention} expires in {remaining} "
            f"(<t:{expires}:F>).\nGranted by <@{grant.granted_by}>. Reason: {grant.reason}",
            EmbedColor.INFO,
            log_to_channel=False,
        )
        return remaining

    @module_group_temprole.subcommand(
        "remove", sub_cmd_description="Remove a temporary role early"
    )
    @interactions.slash_default_member_permission(
        interactions.Permissions.ADMINISTRATOR
    )
    @interactions.slash_option(
        name="user",
        description="Member",
        required=True,
        opt_type=interactions.OptionType.USER,
    )
    @interactions.slash_option(
        name="role",
        description="Role",
        required=True,
        opt_type=interactions.OptionType.ROLE,
    )
    @error_handler
    async def remove_temporary_role(
        self,
        ctx: interactions.SlashContext,
        user: interactions.Member,
        role: interactions.Role,
    ) -> str:
        self.require_administrator(ctx)
        if not self.store.get(ctx.guild_id, user.id, role.id):
            raise ValidationError(
                f"{user.mention} has no temporary grant for {role.mention}."
            )

        if self.role_authority.member_has_role(user, role.id):
            try:
                await call_with_timeout(
                    self.role_authority.remove_role(
                        user, role.id, reason=f"Temporary role removed by {ctx.author.id}"
                    ),
                    self.config.EXTERNAL_CALL_TIMEOUT,
                )
            except NotFoundError:
                logger.info(f"Role {role.id} already gone for {user.id}")

        self.store.remove_one(ctx.guild_id, user.id, role.id)
        await self.send_success(
            ctx,
            f"{ctx.author.mention} removed temporary role {role.mention} from {user.mention}.",
            ephemeral=False,
        )
        return f"Removed {role.id} from {user.id}"

    @module_group_temprole.subcommand(
        "stats", sub_cmd_description="Show temporary role statistics"
    )
    @error_handler
    async def temporary_role_stats(self, ctx: interactions.SlashContext) -> StoreStats:
        stats = self.store.stats(ctx.guild_id)
        embed = await self.create_embed(
            title="Temporary role statistics",
            description="Grants are kept in memory only and are lost when the bot restarts.",
            fields=[
                {"name": "Total grants", "value": str(stats.total_grants)},
                {"name": "Active grants", "value": str(stats.active_grants)},
                {"name": "Expiring within 24h", "value": str(stats.expiring_soon)},
                {"name": "Members", "value": str(stats.subjects)},
                {
                    "name": "Sweep interval",
                    "value": f"{self.config.SWEEP_INTERVAL_SECONDS}s",
                },
            ],
        )
        await ctx.send(embed=embed, ephemeral=True)
        return stats

    @module_group_temprole.subcommand(
        "export", sub_cmd_description="Export the current temporary roles as JSON"
    )
    @interactions.slash_default_member_permission(
        interactions.Permissions.ADMINISTRATOR
    )
    @error_handler
    async def export_temporary_roles(self, ctx: interactions.SlashContext) -> str:
        self.require_administrator(ctx)
        grants = self.store.snapshot(ctx.guild_id)
        payload = orjson.dumps(
            {
                "scope": int(ctx.guild_id),
                "generated_at": utcnow(),
                "grants": grants,
            },
            option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS,
        )
        await ctx.send(
            f"Exported {len(grants)} temporary role grants.",
            files=[
                interactions.File(
                    io.BytesIO(payload), file_name=f"temporary_roles_{ctx.guild_id}.json"
                )
            ],
            ephemeral=True,
        )
        return f"Exported {len(grants)} grants"

    # Ticket commands

    @module_group_tickets.subcommand(
        "panel", sub_cmd_description="Post the ticket panels"
    )
    @interactions.slash_default_member_permission(
        interactions.Permissions.ADMINISTRATOR
    )
    @error_handler
    async def post_ticket_panels(self, ctx: interactions.SlashContext) -> str:
        self.require_administrator(ctx)
        await ctx.defer(ephemeral=True)

        panels = (
            (
                self.config.APPLICATION_PANEL_CHANNEL_ID,
                f"Want to join {self.config.COMMUNITY_NAME}?",
                "Click the button below to create a new ticket and contact the administration!",
                TicketKind.APPLICATION,
            ),
            (
                self.config.HELP_PANEL_CHANNEL_ID,
                "Do you need help?",
                "Click the button below to get help!",
                TicketKind.HELP,
            ),
        )
        posted = 0
        for channel_id, title, description, kind in panels:
            channel = await self.bot.fetch_channel(channel_id)
            if not isinstance(channel, interactions.GuildText):
                logger.error(f"Panel channel {channel_id} is not a valid text channel.")
                continue
            embed = await self.create_embed(title, description, EmbedColor.TICKET)
            await channel.send(
                embed=embed,
                components=[
                    interactions.Button(
                        style=interactions.ButtonStyle.PRIMARY,
                        label="Create ticket",
                        custom_id=kind.value,
                    )
                ],
            )
            posted += 1

        await self.send_success(ctx, f"Posted {posted} ticket panel(s).")
        return f"Posted {posted} panels"

    def ticket_details(
        self, kind: TicketKind, user: interactions.Member
    ) -> Tuple[int, str, str]:
        match kind:
            case TicketKind.APPLICATION:
                return (
                    self.config.APPLICATION_CATEGORY_ID,
                    f"{user.display_name}'s Application Ticket",
                    f"Please read the requirements in <#{self.config.REQUIREMENTS_CHANNEL_ID}> "
                    "and answer the questions in this ticket:\n\n1.\n2.\n3.",
                )
            case TicketKind.HELP:
                return (
                    self.config.HELP_CATEGORY_ID,
                    f"{user.display_name}'s Help Ticket",
                    "Welcome to the help ticket! Please describe your issue in detail "
                    "and our support team will assist you shortly.",
                )

    @interactions.component_callback(TicketKind.APPLICATION.value)
    @error_handler
    async def on_create_application_ticket(
        self, ctx: interactions.ComponentContext
    ) -> Optional[str]:
        return await self.open_ticket(ctx, TicketKind.APPLICATION)

    @interactions.component_callback(TicketKind.HELP.value)
    @error_handler
    async def on_create_help_ticket(
        self, ctx: interactions.ComponentContext
    ) -> Optional[str]:
        return await self.open_ticket(ctx, TicketKind.HELP)

    async def open_ticket(
        self, ctx: interactions.ComponentContext, kind: TicketKind
    ) -> Optional[str]:
        user = ctx.author
        guild = ctx.guild
        await ctx.defer(ephemeral=True)

        if (existing := self.ticket_registry.lookup(user.id)) is not None:
            if await call_with_timeout(
                self.bot.fetch_channel(existing), self.config.EXTERNAL_CALL_TIMEOUT
            ):
                await self.send_error(ctx, "You have already opened a ticket")
                return f"Rejected duplicate ticket for {user.id}"
            logger.info(f"Evicting stale ticket channel {existing} for {user.id}")
            self.ticket_registry.close(user.id)

        if not self.ticket_registry.reserve(user.id):
            await self.send_error(ctx, "Your ticket is already being created")
            return f"Rejected concurrent ticket for {user.id}"

        category_id, title, description = self.ticket_details(kind, user)
        try:
            channel = await call_with_timeout(
                guild.create_text_channel(
                    name=f"ticket-{user.user.username}",
                    topic=str(user.id),
                    category=category_id,
                    permission_overwrites=[
                        interactions.PermissionOverwrite(
                            id=guild.id,
                            type=interactions.OverwriteType.ROLE,
                            deny=interactions.Permissions.VIEW_CHANNEL,
                        ),
                        interactions.PermissionOverwrite(
                            id=user.id,
                            type=interactions.OverwriteType.MEMBER,
                            allow=interactions.Permissions.VIEW_CHANNEL
                            | interactions.Permissions.SEND_MESSAGES,
                        ),
                        interactions.PermissionOverwrite(
                            id=self.config.STAFF_ROLE_ID,
                            type=interactions.OverwriteType.ROLE,
                            allow=interactions.Permissions.VIEW_CHANNEL
                            | interactions.Permissions.SEND_MESSAGES,
                        ),
                    ],
                    reason=f"{kind.name.title()} ticket for {user.id}",
                ),
                self.config.EXTERNAL_CALL_TIMEOUT,
            )
        except Exception:
            self.ticket_registry.release(user.id)
            raise

        self.ticket_registry.open(user.id, channel.id)

        embed = await self.create_embed(title, description, EmbedColor.TICKET)
        embed.set_thumbnail(url=user.display_avatar.url)
        await channel.send(
            content=f"{user.mention} <@&{self.config.STAFF_ROLE_ID}>",
            embed=embed,
            components=[
                interactions.Button(
                    style=interactions.ButtonStyle.DANGER,
                    label="Close Ticket",
                    custom_id="close_ticket",
                )
            ],
        )

        await ctx.send(f"Your ticket has been created in: {channel.mention}", ephemeral=True)
        return f"Opened {kind.name.lower()} ticket {channel.id} for {user.id}"

    @interactions.component_callback("close_ticket")
    @error_handler
    async def on_close_ticket(self, ctx: interactions.ComponentContext) -> str:
        self.require_staff(ctx)
        channel = ctx.channel
        owner_id = parse_ticket_owner(getattr(channel, "topic", None))
        if owner_id is None:
            owner_id = self.ticket_registry.subject_for(channel.id)

        if owner_id is not None:
            try:
                await call_with_timeout(
                    self.notifier.send_direct_message(
                        owner_id,
                        f"{ctx.author.user.username} closed your ticket",
                        title="Your ticket has been closed!",
                    ),
                    self.config.EXTERNAL_CALL_TIMEOUT,
                )
            except ExternalError as e:
                logger.warning(f"Failed to send close notice to {owner_id}: {e!r}")

        await call_with_timeout(
            channel.delete(reason=f"Ticket closed by {ctx.author.id}"),
            self.config.EXTERNAL_CALL_TIMEOUT,
        )
        if owner_id is not None:
            self.ticket_registry.close(owner_id)
        return f"Closed ticket {channel.id}"

    @interactions.listen(ChannelDelete)
    async def on_channel_delete(self, event: ChannelDelete) -> None:
        if (subject := self.ticket_registry.subject_for(event.channel.id)) is not None:
            self.ticket_registry.close(subject)
            logger.info(f"Evicted ticket of {subject} after channel deletion")

    @staticmethod
    def scan_ticket_channels(
        channels: Iterable[Any], category_ids: FrozenSet[int]
    ) -> Dict[int, int]:
        entries: Dict[int, int] = {}
        for channel in channels:
            if getattr(channel, "parent_id", None) not in category_ids:
                continue
            if (owner_id := parse_ticket_owner(getattr(channel, "topic", None))) is not None:
                entries[owner_id] = int(channel.id)
        return entries

    # Events

    @interactions.listen(Startup)
    async def on_startup(self, event: Startup) -> None:
        categories = frozenset(
            (self.config.APPLICATION_CATEGORY_ID, self.config.HELP_CATEGORY_ID)
        )
        entries: Dict[int, int] = {}
        for guild in self.bot.guilds:
            entries.update(self.scan_ticket_channels(guild.channels, categories))
        self.ticket_registry.rebuild(entries.items())
        logger.info(f"Ticket registry rebuilt with {len(entries)} open tickets")

    @interactions.listen(ExtensionLoad)
    async def on_extension_load(self, event: ExtensionLoad) -> None:
        self.sweep_expired_roles.trigger = interactions.IntervalTrigger(
            seconds=self.config.SWEEP_INTERVAL_SECONDS
        )
        self.sweep_expired_roles.start()

    @interactions.listen(ExtensionUnload)
    async def on_extension_unload(self, event: ExtensionUnload) -> None:
        self.sweep_expired_roles.stop()

    # Tasks

    @interactions.Task.create(interactions.IntervalTrigger(seconds=60))
    async def sweep_expired_roles(self) -> None:
        await self.reconciler.sweep()


if __name__ == "__main__":
    if not (token := os.environ.get("DISCORD_TOKEN")):
        logger.critical("DISCORD_TOKEN is not set")
        raise SystemExit(1)

    client = interactions.Client(
        intents=interactions.Intents.DEFAULT | interactions.Intents.GUILD_MEMBERS
    )
    Assistant(client)
    client.start(token)
