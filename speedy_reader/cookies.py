"""Read browser cookies so access-restricted articles can be fetched."""

from __future__ import annotations

import configparser
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

COOKIE_QUERY = text(
    "SELECT name, value FROM moz_cookies WHERE host IN :hosts"
).bindparams(bindparam("hosts", expanding=True))


def cookie_hosts(domain: str) -> list:
    """Host values whose cookies apply to ``domain``: itself and its parent domains."""
    labels = domain.lower().strip(".").split(".")
    hosts = [".".join(labels)]
    for i in range(len(labels) - 1):
        hosts.append("." + ".".join(labels[i:]))
    return hosts


class FirefoxCookieStore:
    """Cookies from the default Firefox profile.

    Firefox keeps ``cookies.sqlite`` locked while running, so the file is
    copied before it is queried. Any failure yields no cookies.
    """

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root else Path.home() / ".mozilla" / "firefox"

    def find_profile(self) -> Optional[Path]:
        if not self.root.is_dir():
            logger.debug("No Firefox directory at %s", self.root)
            return None

        profiles_ini = self.root / "profiles.ini"
        if profiles_ini.exists():
            parser = configparser.ConfigParser()
            try:
                parser.read(profiles_ini, encoding="utf-8")
            except configparser.Error as exc:
                logger.debug("Unreadable profiles.ini: %s", exc)
            else:
                for section in parser.sections():
                    if parser.get(section, "Default", fallback="0") != "1":
                        continue
                    path = parser.get(section, "Path", fallback=None)
                    if not path:
                        continue
                    relative = parser.get(section, "IsRelative", fallback="1") == "1"
                    profile = self.root / path if relative else Path(path)
                    if profile.is_dir():
                        return profile

        for candidate in sorted(self.root.iterdir()):
            if candidate.is_dir() and (candidate / "cookies.sqlite").exists():
                return candidate
        return None

    def cookie_header(self, domain: str) -> str:
        profile = self.find_profile()
        if profile is None:
            return ""
        cookies_db = profile / "cookies.sqlite"
        if not cookies_db.exists():
            logger.debug("Firefox cookies.sqlite not found in %s", profile)
            return ""

        with tempfile.TemporaryDirectory(prefix="speedy-reader-") as tmp:
            copy = Path(tmp) / "cookies.sqlite"
            try:
                shutil.copy(cookies_db, copy)
            except OSError as exc:
                logger.debug("Failed to copy cookies database: %s", exc)
                return ""

            engine = create_engine(f"sqlite:///{copy}")
            try:
                with engine.connect() as conn:
                    rows = conn.execute(
                        COOKIE_QUERY, {"hosts": cookie_hosts(domain)}
                    ).all()
            except SQLAlchemyError as exc:
                logger.debug("Failed to read cookies database: %s", exc)
                return ""
            finally:
                engine.dispose()

        return "; ".join(f"{name}={value}" for name, value in rows)
