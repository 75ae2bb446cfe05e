"""
core/services.py -- The service container handed to every request context.

Process-wide collaborators (database, platform settings, token service,
revocation cache, rate limiter, password vault, repositories) are created
once by the composition root (api/services.py) and injected into each
RequestContext through this container. Nothing in Warden reaches for a
module-level singleton except get_settings().

Layer rule: core/ may not import auth/ or ratelimit/ at runtime; the types
below are for annotations only.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.groups import GroupStore
    from auth.revocation import RevocationCache
    from auth.tokens import TokenService
    from auth.twofactor import TwoFactorEngine
    from auth.users import UserStore
    from auth.vault import PasswordVault
    from core.config import Settings
    from core.db import Database
    from core.menu import Menu
    from core.system import SystemConfig
    from ratelimit.iptrk import IPTracker


@dataclass
class Services:
    settings: Settings
    db: Database
    system: SystemConfig
    vault: PasswordVault
    tokens: TokenService
    revocation: RevocationCache
    iptrk: IPTracker
    users: UserStore
    twofactor: TwoFactorEngine
    groups: GroupStore
    # Root of the command tree; a callable so sub-menus are built per request.
    main_menu: Callable[[], Menu]
    # (ctx, what, perms) -> (final, ok, reason); consulted for app_0..app_9
    app_perms: Callable[..., tuple[bool, bool, str]] | None = None
    # (ctx, menu) -> None; may add, remove or retag entries before dispatch
    menu_override: Callable[..., None] | None = None
