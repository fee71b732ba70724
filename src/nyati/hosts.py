"""Host selection for nyati.

Turns the host argument of the command line into the hosts a run targets:
- all: every configured host
- Exact host names: web01,web02
- Glob patterns: web*
- Exclusion patterns: !db*
"""

import fnmatch
from typing import Mapping

from .exceptions import ConfigError
from .types import HostConfig

ALL_HOSTS = "all"


def parse_host_pattern(pattern: str) -> tuple[set[str], set[str], set[str]]:
    """Parse a host pattern into include/exclude sets.

    Args:
        pattern: Comma-separated list of host names, globs and !exclusions

    Returns:
        Tuple of (include_exact, include_patterns, exclude_patterns)
    """
    include_exact: set[str] = set()
    include_patterns: set[str] = set()
    exclude_patterns: set[str] = set()

    for part in pattern.split(","):
        part = part.strip()
        if not part:
            continue

        if part.startswith("!"):
            exclude_patterns.add(part[1:])
        elif part == ALL_HOSTS:
            include_patterns.add("*")
        elif "*" in part or "?" in part or "[" in part:
            include_patterns.add(part)
        else:
            include_exact.add(part)

    return include_exact, include_patterns, exclude_patterns


def match_host(
    name: str,
    include_exact: set[str],
    include_patterns: set[str],
    exclude_patterns: set[str],
) -> bool:
    """Check if a host name matches the selection criteria."""
    # Exclusions win over everything
    for pattern in exclude_patterns:
        if fnmatch.fnmatch(name, pattern):
            return False

    # Only exclusions given: everything else is selected
    if not include_exact and not include_patterns:
        return True

    if name in include_exact:
        return True

    return any(fnmatch.fnmatch(name, pattern) for pattern in include_patterns)


def select_hosts(hosts: Mapping[str, HostConfig], selection: str) -> dict[str, HostConfig]:
    """Pick the hosts a run targets, keeping config file order.

    Args:
        hosts: Configured hosts by alias
        selection: "all", a host alias, or a comma-separated pattern

    Returns:
        Selected hosts by alias

    Raises:
        ConfigError: If an exact name is unknown or nothing is selected

    Examples:
        select_hosts(config.hosts, "all")
        select_hosts(config.hosts, "server1")
        select_hosts(config.hosts, "web*,!web03")
    """
    include_exact, include_patterns, exclude_patterns = parse_host_pattern(selection or "")

    for name in sorted(include_exact):
        if name not in hosts:
            raise ConfigError(f"host {name} not found", host=name)

    if not (include_exact or include_patterns or exclude_patterns):
        raise ConfigError("no hosts selected; use deploy <host> or deploy all")

    selected = {
        name: host
        for name, host in hosts.items()
        if match_host(name, include_exact, include_patterns, exclude_patterns)
    }
    if not selected:
        raise ConfigError(f"no hosts matched '{selection}'")
    return selected


def format_selection_summary(total: int, selected: int, selection: str) -> str:
    """One-line summary of a host selection for the operator."""
    if selected == total:
        return f"All {total} host(s) selected by '{selection}'"
    return f"Selected {selected}/{total} host(s) with '{selection}'"
