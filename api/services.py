"""
api/services.py -- Composition root: builds the Services container and the command tree.

Both front doors (api/main.py and the tests) call build_services(); nothing
else constructs stores or workers. Workers are created stopped; the caller
decides when to start() them.

Construction order follows the dependencies:
  Database -> SystemConfig -> vault -> revocation -> tokens -> iptrk
           -> second factors -> users -> groups
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.groups import GroupStore, group_menu
from auth.pwdict import WeakDictionary
from auth.revocation import RevocationCache
from auth.tokens import TokenService
from auth.twofactor import TwoFactorEngine
from auth.users import UserStore, user_menu
from auth.vault import PasswordVault
from core.config import Settings
from core.db import Database
from core.menu import Menu, MenuEntry
from core.perms import Perm
from core.services import Services
from core.system import SystemConfig, system_menu
from ratelimit.iptrk import IPTracker

logger = logging.getLogger("warden.api")


def main_menu() -> Menu:
    return Menu(
        [
            MenuEntry("user", user_menu, 0, -1, None, Perm.NONE, "User commands"),
            MenuEntry("group", group_menu, 0, -1, None, Perm.USER, "Group commands"),
            MenuEntry("system", system_menu, 0, -1, None, Perm.NONE, "System commands"),
        ]
    )


def build_services(settings: Settings, db: Database | None = None) -> Services:
    """Wire every collaborator for one process."""
    db = db if db is not None else Database(settings.database_url)
    system = SystemConfig.load(db)
    vault = PasswordVault(WeakDictionary.load(settings.pw_dictionaries), rounds=settings.pw_hash_rounds)
    revocation = RevocationCache(db, interval=settings.jwt_invalid_interval)
    tokens = TokenService(
        settings.jwt_private_pem,
        settings.jwt_public_pem,
        settings.app_name,
        revocation,
        ttl=timedelta(minutes=settings.token_ttl_minutes),
        refresh_window=timedelta(minutes=settings.token_refresh_minutes),
    )
    iptrk = IPTracker(
        db,
        max_count=settings.iptrk_max,
        expire=settings.iptrk_expire_delta,
        interval=settings.iptrk_interval,
    )
    twofactor = TwoFactorEngine(db, system, app_name=settings.app_name, check=settings.check_2fa)
    if not settings.check_2fa:
        logger.warning("WARNING: Second factor verification is disabled. Never run production like this.")
    users = UserStore(db, vault, system, twofactor, iptrk, settings)
    groups = GroupStore(db)
    return Services(
        settings=settings,
        db=db,
        system=system,
        vault=vault,
        tokens=tokens,
        revocation=revocation,
        iptrk=iptrk,
        users=users,
        twofactor=twofactor,
        groups=groups,
        main_menu=main_menu,
    )


def start_workers(services: Services) -> None:
    services.revocation.start()
    services.iptrk.start()


def stop_workers(services: Services) -> None:
    services.iptrk.stop()
    services.revocation.stop()
