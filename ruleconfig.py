"""Load approval rules from TOML into an immutable :class:`rules.RuleSet`.

Example ``config.toml``::

    include = ["python.toml"]

    [[wrappers.command]]
    command = "timeout"
    flags = ["<arg>"]

    [[commands.subcommand]]
    command = "git"
    subcommands = ["diff", "log", "status"]
    flags = ["-C <arg>"]

    [[deny.regex]]
    pattern = 'rm\\s+-rf\\s+/'
    name = "rm root"

Included files contribute their patterns before the including file's own.
"""

import logging
import os

try:
    import tomllib
except ModuleNotFoundError:
    import tomli as tomllib

from rules import (
    CommandSpec,
    RegexSpec,
    RuleError,
    RuleSet,
    SimpleSpec,
    SubcommandSpec,
    compile_rule,
)

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_ENV = "BASH_APPROVER_CONFIG"
PROFILE_ENV = "BASH_APPROVER_PROFILE"
CONFIG_FILE = "config.toml"

# (toml table, RuleSet field, strips prefixes?)
SECTIONS = (
    ("wrappers", "wrappers", True),
    ("commands", "allow", False),
    ("deny", "deny", False),
)

# Compile order of rule kinds inside one section
KIND_ORDER = ("simple", "command", "subcommand", "regex")

logger = logging.getLogger("ruleconfig")


class ConfigError(Exception):
    """The configuration cannot be read or compiled."""


def get_config_dir():
    return os.environ.get(CONFIG_ENV) or SCRIPT_DIR


def resolve_profile(profile=None):
    """Explicit profile, else the environment variable, else ``None``."""
    return profile or os.environ.get(PROFILE_ENV) or None


def config_path(config_dir=None, profile=None):
    config_dir = config_dir or get_config_dir()
    filename = f"{profile}.toml" if profile else CONFIG_FILE
    return os.path.join(config_dir, filename)


def _string_list(value):
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        return ()
    return tuple(v for v in value if isinstance(v, str))


def _to_spec(kind, entry):
    if kind == "simple":
        return SimpleSpec(name=str(entry.get("name", "")), commands=_string_list(entry.get("commands")))
    if kind == "command":
        return CommandSpec(command=str(entry.get("command", "")), flags=_string_list(entry.get("flags")))
    if kind == "subcommand":
        return SubcommandSpec(
            command=str(entry.get("command", "")),
            subcommands=_string_list(entry.get("subcommands")),
            flags=_string_list(entry.get("flags")),
        )
    return RegexSpec(pattern=str(entry.get("pattern", "")), name=str(entry.get("name", "")))


def parse_section(section_data, section, wrapper=False):
    """Compile one ``[wrappers]``/``[commands]``/``[deny]`` table into patterns."""
    if not isinstance(section_data, dict):
        raise RuleError(f"{section}: expected a table of rule lists")
    unknown = sorted(set(section_data) - set(KIND_ORDER))
    if unknown:
        raise RuleError(f"{section}: unknown rule kind(s): {', '.join(unknown)}")

    patterns = []
    for kind in KIND_ORDER:
        entries = section_data.get(kind, [])
        if not isinstance(entries, list):
            raise RuleError(f"{section}.{kind}: expected an array of tables")
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise RuleError(f"{section}.{kind}[{i}]: expected a table")
            patterns.extend(compile_rule(_to_spec(kind, entry), section, i, wrapper=wrapper))
    return tuple(patterns)


def loads(text, config_dir=None, profile=None, _visited=None, _source="<string>"):
    """Parse TOML ``text`` into a :class:`RuleSet`.

    ``config_dir`` is where ``include`` paths resolve; without it includes
    are skipped with a debug message.
    """
    visited = _visited if _visited is not None else set()
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{_source}: failed to parse TOML: {e}") from e

    ruleset = RuleSet(profile=profile)

    for include in _string_list(raw.get("include")):
        if not config_dir:
            logger.debug("include %r ignored (no config directory)", include)
            continue
        include_path = os.path.abspath(os.path.join(config_dir, include))
        if include_path in visited:
            raise ConfigError(f"{_source}: circular include detected: {include}")
        visited.add(include_path)
        logger.debug("loading include %s", include_path)
        ruleset = ruleset.merged(_load_file(include_path, config_dir, profile, visited))

    try:
        compiled = {
            field: parse_section(raw[table], table, wrapper=wrapper)
            for table, field, wrapper in SECTIONS
            if table in raw
        }
    except RuleError as e:
        raise ConfigError(f"{_source}: {e}") from e
    return ruleset.merged(RuleSet(**compiled))


def _load_file(path, config_dir, profile, visited):
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ConfigError(f"failed to read {path}: {e}") from e
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ConfigError(f"{path}: not valid UTF-8: {e}") from e
    return loads(text, config_dir, profile, visited, _source=path)


def load_ruleset(config_dir=None, profile=None):
    """Load the main config (or ``<profile>.toml``) from ``config_dir``.

    A missing ``config.toml`` gives an empty rule set, which approves
    nothing; a missing profile file is an error.
    """
    config_dir = config_dir or get_config_dir()
    path = os.path.abspath(config_path(config_dir, profile))
    if not os.path.exists(path):
        if profile:
            raise ConfigError(f"profile {profile!r} not found: {path}")
        logger.warning("no config at %s; every command will ask", path)
        return RuleSet()

    ruleset = _load_file(path, config_dir, profile, {path})
    logger.debug(
        "config loaded from %s: %d wrappers, %d allow, %d deny",
        path, len(ruleset.wrappers), len(ruleset.allow), len(ruleset.deny),
    )
    return ruleset


def load_ruleset_or_empty(config_dir=None, profile=None):
    """Like :func:`load_ruleset`, but a broken config asks for everything."""
    try:
        return load_ruleset(config_dir, profile)
    except ConfigError as e:
        logger.error("failed to load config, every command will ask: %s", e)
        return RuleSet(profile=profile)
