"""nuget.config reader: package sources, disabled sources, stored credentials."""
from __future__ import annotations

import logging
import os
import re
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from common.errors import ConfigError
from common.logging_utils import safe_url
from common.validation import is_valid_feed_location, is_valid_source_name
from credentials.models import StaticCredential

from .sources import Source

logger = logging.getLogger(__name__)

_DOTNET_SOURCE_RE = re.compile(r"^\s+(\d+)\.\s\s(.+?)\s+\[(Enabled|Disabled)\]")


@dataclass
class ConfigSnapshot:
    """Merged view of every config file that was found."""
    sources: List[Source] = field(default_factory=list)
    credentials: Dict[str, StaticCredential] = field(default_factory=dict)
    files: List[str] = field(default_factory=list)

    def source_config_map(self) -> Dict[str, str]:
        """Source name -> config file that declared it."""
        return {s.name: s.origin_config_file for s in self.sources if s.origin_config_file}


def find_config_files(
    workspace: Optional[str] = None,
    home: Optional[str] = None,
    platform: str = sys.platform,
) -> List[str]:
    """Config files in lookup order: user scope first, then the workspace.

    Args:
        workspace: Workspace root to look for nuget.config / NuGet.Config in
        home: User profile directory (defaults to ``~``)
        platform: ``sys.platform`` value, for the Windows AppData location

    Returns:
        Existing config file paths, without duplicates
    """
    profile = home or os.environ.get("USERPROFILE") or os.path.expanduser("~")
    candidates = [os.path.join(profile, ".nuget", "NuGet", "NuGet.Config")]
    if platform.startswith("win"):
        candidates.append(os.path.join(profile, "AppData", "Roaming", "NuGet", "NuGet.Config"))
    if workspace:
        candidates.append(os.path.join(workspace, "nuget.config"))
        candidates.append(os.path.join(workspace, "NuGet.Config"))

    found: List[str] = []
    seen = set()
    for path in candidates:
        if not os.path.isfile(path):
            continue
        ident = os.path.normcase(os.path.realpath(path))
        if ident in seen:
            continue
        seen.add(ident)
        found.append(path)
    return found


def _adds(section: Optional[ET.Element]) -> List[ET.Element]:
    if section is None:
        return []
    return [child for child in section if child.tag == "add"]


def parse_config_text(text: str, path: Optional[str] = None) -> Tuple[List[Source], Dict[str, StaticCredential]]:
    """Parse one nuget.config document.

    Raises:
        ConfigError: when the document is not well-formed XML.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ConfigError(f"Couldn't parse {path or 'nuget.config'}: {exc}") from exc

    sources: List[Source] = []
    package_sources = root.find("packageSources")
    if package_sources is not None:
        for child in package_sources:
            if child.tag == "clear":
                sources.clear()
            elif child.tag == "add":
                key = child.get("key")
                value = child.get("value")
                if key and value:
                    sources = [s for s in sources if s.name != key]
                    sources.append(Source(name=key, url=value, enabled=True, origin_config_file=path))

    disabled = {
        add.get("key")
        for add in _adds(root.find("disabledPackageSources"))
        if add.get("value", "true").lower() == "true"
    }
    for source in sources:
        if source.name in disabled:
            source.enabled = False

    credentials: Dict[str, StaticCredential] = {}
    cred_section = root.find("packageSourceCredentials")
    if cred_section is not None:
        for source_elem in cred_section:
            username = None
            password = None
            encrypted = False
            for add in _adds(source_elem):
                key = (add.get("key") or "").lower()
                value = add.get("value")
                if key == "username":
                    username = value
                elif key == "cleartextpassword":
                    password, encrypted = value, False
                elif key == "password":
                    password, encrypted = value, True
            if password:
                credentials[source_elem.tag] = StaticCredential(username, password, encrypted)

    return sources, credentials


def parse_config_file(path: str) -> Tuple[List[Source], Dict[str, StaticCredential]]:
    """Parse a config file; unreadable or malformed files yield nothing."""
    try:
        with open(path, "r", encoding="utf-8-sig") as fh:
            text = fh.read()
        return parse_config_text(text, path)
    except (OSError, ConfigError) as exc:
        logger.warning("Couldn't read NuGet config %s: %s", path, exc)
        return [], {}


def is_usable_source(source: Source) -> bool:
    """Check a loaded source's name and URL; invalid ones are logged and skipped."""
    if not is_valid_source_name(source.name):
        logger.warning("Skipping NuGet source with an invalid name: %r", source.name)
        return False
    if not is_valid_feed_location(source.url):
        logger.warning("Skipping NuGet source %s: invalid URL %s", source.name, safe_url(source.url))
        return False
    return True


def load_config(workspace: Optional[str] = None, home: Optional[str] = None) -> ConfigSnapshot:
    """Merge every config file; the first declaration of a name wins."""
    snapshot = ConfigSnapshot()
    names = set()
    for path in find_config_files(workspace, home):
        snapshot.files.append(path)
        sources, credentials = parse_config_file(path)
        for source in sources:
            if source.name not in names and is_usable_source(source):
                names.add(source.name)
                snapshot.sources.append(source)
        for name, cred in credentials.items():
            snapshot.credentials.setdefault(name, cred)
    return snapshot


def parse_dotnet_source_list(output: str) -> List[Source]:
    """Parse ``dotnet nuget list source --format detailed`` output.

    Each source is a numbered ``Name [Enabled]`` line followed by its URL.
    """
    sources: List[Source] = []
    lines = output.splitlines()
    for index, line in enumerate(lines):
        match = _DOTNET_SOURCE_RE.match(line)
        if not match or index + 1 >= len(lines):
            continue
        url = lines[index + 1].strip()
        if url:
            sources.append(
                Source(name=match.group(2).strip(), url=url, enabled=match.group(3) == "Enabled")
            )
    return sources


async def load_sources(
    workspace: Optional[str] = None,
    home: Optional[str] = None,
    list_sources: Optional[Callable[[], Awaitable[Optional[str]]]] = None,
) -> ConfigSnapshot:
    """Sources as the dotnet CLI reports them, else from the config files.

    Credentials always come from the config files; the CLI does not print
    them.

    Args:
        workspace: Workspace root for nuget.config lookup
        home: User profile directory
        list_sources: Coroutine returning ``dotnet nuget list source`` output

    Returns:
        ConfigSnapshot with sources and the static credential table
    """
    snapshot = load_config(workspace, home)
    if list_sources is None:
        return snapshot
    try:
        output = await list_sources()
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logger.debug("dotnet nuget list source failed: %s", exc)
        return snapshot
    from_cli = [s for s in parse_dotnet_source_list(output or "") if is_usable_source(s)]
    if from_cli:
        origins = snapshot.source_config_map()
        for source in from_cli:
            source.origin_config_file = origins.get(source.name)
        snapshot.sources = from_cli
    return snapshot
