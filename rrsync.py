#!/usr/bin/env python3

# rrsync.py - Restricted rsync forced command for SSH
#
#    Copyright (C) 2004-2009  Joe Smith <js-cgi@inwap.com>
#    Copyright (C) 2004-2009  Wayne Davison <wayned@samba.org>
#    Copyright (C) 2009       BDV (sudo support)
#
#    This program is free software: you can redistribute it and/or modify
#    it under the terms of the GNU General Public License as published by
#    the Free Software Foundation, either version 3 of the License, or
#    (at your option) any later version.
#
#    This program is distributed in the hope that it will be useful,
#    but WITHOUT ANY WARRANTY; without even the implied warranty of
#    MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
#    GNU General Public License for more details.
#
#    You should have received a copy of the GNU General Public License
#    along with this program.  If not, see <https://www.gnu.org/licenses/>.
#
###############################################################################
#
# rrsync restricts an SSH key to rsync transfers inside a single directory
# subtree. It is installed as a forced command in `authorized_keys`:
#
#   command="rrsync logs/client" ssh-rsa AAAAB3NzaC1yc2EAAAABIwAAAIEAzGhEeNlPr...
#   command="rrsync -ro results" ssh-rsa AAAAB3NzaC1yc2EAAAABIwAAAIEAmkHG1WCjC...
#
# sshd hands us the command the client asked for in SSH_ORIGINAL_COMMAND:
#
#   rsync --server          -vlogDtpr --partial . ARG   # push
#   rsync --server --sender -vlogDtpr --partial . ARGS  # pull
#
# Every option is checked against a whitelist, every path is kept inside the
# restricted directory, and the real rsync is then exec'd through sudo as a
# fixed user.
#
# rrsync uses an optional configuration file, by default at
# `/etc/rrsync/rrsync.yml`, to override the rsync and sudo binaries, the
# target user, logging and the option whitelist.
#
###############################################################################

###############################################################################
# Imports and helper functions
###############################################################################

import enum
import glob
import logging
import logging.handlers
import os
import re
import socket
import sys
import time
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterator, List, Mapping, NamedTuple, Optional, Tuple

import yaml

log = logging.getLogger("rrsync")

USAGE = """Use 'command="rrsync [-ro] SUBDIR"'
\tin front of lines in {home}/.ssh/authorized_keys"""

# Perl's \s, not str.isspace()
WHITESPACE = " \t\n\r\f\v"


def usage():
    return USAGE.format(home=os.environ.get("HOME", "~"))


###############################################################################
# Exceptions
###############################################################################


class RrsyncError(Exception):
    """
    Base class for every fatal rrsync error
    """


class ConfigurationError(RrsyncError):
    pass


class ProtocolPreconditionError(RrsyncError):
    pass


class PolicyViolation(RrsyncError):
    pass


class UnknownOption(RrsyncError):
    pass


class DisabledOption(RrsyncError):
    pass


class TraversalAttempt(RrsyncError):
    pass


class MalformedSyntax(RrsyncError):
    pass


class ExpansionLimitExceeded(RrsyncError):
    pass


class DispatchFailure(RrsyncError):
    pass


###############################################################################
# Configuration parsing
###############################################################################

default_config_file = "/etc/rrsync/rrsync.yml"

default_config = {
    "rsync_command": "/usr/bin/rsync",
    "sudo_command": "/usr/bin/sudo",
    "sudo_user": "root",
    "audit_log": "rrsync.log",
    "log_to_syslog": False,
    "debug": False,
    "short_disabled": "s",
    "disabled_options": [],
    "glob_limit": 4096,
}


def _section(o_config, *keys):
    section = o_config
    for key in keys:
        section = section.get(key) or {}
        if not isinstance(section, dict):
            raise ConfigurationError("Configuration section '{}' is not a mapping".format(".".join(keys)))
    return section


def load_config(config_file=None):
    """
    Load the configuration, falling back to the built-in defaults

    An explicitly named file (argument or RRSYNC_CONFIG) must exist; the
    default file is optional.
    """
    explicit = config_file is not None or "RRSYNC_CONFIG" in os.environ
    if config_file is None:
        config_file = os.environ.get("RRSYNC_CONFIG", default_config_file)

    config = dict(default_config)

    if not os.path.exists(config_file):
        if explicit:
            raise ConfigurationError("Configuration file '{}' does not exist".format(config_file))
        return config

    with open(config_file, "r") as cfgfile:
        try:
            o_config = yaml.load(cfgfile, Loader=yaml.SafeLoader) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError("Failed to parse configuration file: {}".format(e))

    if not isinstance(o_config, dict):
        raise ConfigurationError("Configuration file '{}' is not a mapping".format(config_file))

    commands = _section(o_config, "rrsync", "commands")
    sudo = _section(o_config, "rrsync", "sudo")
    logging_cfg = _section(o_config, "rrsync", "logging")
    options = _section(o_config, "rrsync", "options")
    glob_cfg = _section(o_config, "rrsync", "glob")

    config["rsync_command"] = str(commands.get("rsync", config["rsync_command"]))
    config["sudo_command"] = str(commands.get("sudo", config["sudo_command"]))
    config["sudo_user"] = str(sudo.get("user", config["sudo_user"]))
    audit_log = logging_cfg.get("audit_log", config["audit_log"])
    config["audit_log"] = str(audit_log) if audit_log else None
    config["log_to_syslog"] = bool(logging_cfg.get("syslog", config["log_to_syslog"]))
    config["debug"] = bool(logging_cfg.get("debug", config["debug"]))
    # An empty value re-enables every short option
    config["short_disabled"] = str(options.get("short_disabled", config["short_disabled"]) or "")

    disabled = options.get("disabled") or []
    if not isinstance(disabled, list):
        raise ConfigurationError("options.disabled must be a list of long option names")
    config["disabled_options"] = [str(opt).lstrip("-") for opt in disabled]

    try:
        config["glob_limit"] = int(glob_cfg.get("limit", config["glob_limit"]))
    except (TypeError, ValueError):
        raise ConfigurationError("glob.limit must be an integer")
    if config["glob_limit"] < 1:
        raise ConfigurationError("glob.limit must be positive")

    for key in ("rsync_command", "sudo_command"):
        if not os.path.isabs(config[key]):
            raise ConfigurationError("{} must be an absolute path, not '{}'".format(key, config[key]))

    return config


###############################################################################
# Logging
###############################################################################


def setup_logging(config=None):
    """
    Send diagnostics to stderr, and optionally to syslog

    stderr goes back to the rsync client, so unless we are on a terminal only
    errors are written there.
    """
    config = config or default_config
    log.setLevel(logging.DEBUG)
    log.handlers.clear()
    log.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO if sys.stderr.isatty() else logging.ERROR)
    console.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    log.addHandler(console)

    if config.get("log_to_syslog", False):
        try:
            syslog = logging.handlers.SysLogHandler(address="/dev/log")
        except OSError:
            # No /dev/log (e.g. macOS)
            syslog = logging.handlers.SysLogHandler(address=("localhost", 514))
        syslog.setLevel(logging.DEBUG if config.get("debug", False) else logging.INFO)
        syslog.setFormatter(logging.Formatter("%(name)s: %(levelname)s %(message)s"))
        log.addHandler(syslog)

    return log


###############################################################################
# Option policy table
###############################################################################


class ArgCheck(enum.IntEnum):
    FORBIDDEN = -1
    NO_ARG = 0
    TRUSTED = 1
    CHECK_WHEN_RECEIVING = 2
    CHECK_ALWAYS = 3


# These options are the only options that rsync might send to the server,
# and only in the option format that the stock rsync produces.
LONG_OPTIONS = {
    "append": ArgCheck.NO_ARG,
    "backup-dir": ArgCheck.CHECK_WHEN_RECEIVING,
    "bwlimit": ArgCheck.TRUSTED,
    "checksum-seed": ArgCheck.TRUSTED,
    "compare-dest": ArgCheck.CHECK_WHEN_RECEIVING,
    "compress-level": ArgCheck.TRUSTED,
    "copy-dest": ArgCheck.CHECK_WHEN_RECEIVING,
    "copy-unsafe-links": ArgCheck.NO_ARG,
    "daemon": ArgCheck.FORBIDDEN,
    "delay-updates": ArgCheck.NO_ARG,
    "delete": ArgCheck.NO_ARG,
    "delete-after": ArgCheck.NO_ARG,
    "delete-before": ArgCheck.NO_ARG,
    "delete-delay": ArgCheck.NO_ARG,
    "delete-during": ArgCheck.NO_ARG,
    "delete-excluded": ArgCheck.NO_ARG,
    "existing": ArgCheck.NO_ARG,
    "fake-super": ArgCheck.NO_ARG,
    "files-from": ArgCheck.CHECK_ALWAYS,
    "force": ArgCheck.NO_ARG,
    "from0": ArgCheck.NO_ARG,
    "fuzzy": ArgCheck.NO_ARG,
    "iconv": ArgCheck.TRUSTED,
    "ignore-errors": ArgCheck.NO_ARG,
    "ignore-existing": ArgCheck.NO_ARG,
    "inplace": ArgCheck.NO_ARG,
    "link-dest": ArgCheck.CHECK_WHEN_RECEIVING,
    "list-only": ArgCheck.NO_ARG,
    "log-file": ArgCheck.CHECK_ALWAYS,
    "log-format": ArgCheck.TRUSTED,
    "max-delete": ArgCheck.TRUSTED,
    "max-size": ArgCheck.TRUSTED,
    "min-size": ArgCheck.TRUSTED,
    "modify-window": ArgCheck.TRUSTED,
    "no-i-r": ArgCheck.NO_ARG,
    "no-implied-dirs": ArgCheck.NO_ARG,
    "no-r": ArgCheck.NO_ARG,
    "no-relative": ArgCheck.NO_ARG,
    "no-specials": ArgCheck.NO_ARG,
    "numeric-ids": ArgCheck.NO_ARG,
    "only-write-batch": ArgCheck.TRUSTED,
    "partial": ArgCheck.NO_ARG,
    "partial-dir": ArgCheck.CHECK_WHEN_RECEIVING,
    "remove-sent-files": ArgCheck.NO_ARG,
    "remove-source-files": ArgCheck.NO_ARG,
    "safe-links": ArgCheck.NO_ARG,
    "sender": ArgCheck.NO_ARG,
    "server": ArgCheck.NO_ARG,
    "size-only": ArgCheck.NO_ARG,
    "skip-compress": ArgCheck.TRUSTED,
    "specials": ArgCheck.NO_ARG,
    "suffix": ArgCheck.TRUSTED,
    "super": ArgCheck.NO_ARG,
    "temp-dir": ArgCheck.CHECK_WHEN_RECEIVING,
    "timeout": ArgCheck.TRUSTED,
    "use-qsort": ArgCheck.NO_ARG,
}

# Removing files on the sending side would let a read-only key delete data
READ_ONLY_FORBIDDEN = ("remove-sent-files", "remove-source-files")

# DO NOT REMOVE ANY; disable letters with short_disabled instead
SHORT_NO_ARG = "ACDEHIKLORSWXbcdgklmnoprstuvxz"
SHORT_WITH_NUM = "B"
DEFAULT_SHORT_DISABLED = "s"


class OptionPolicy(NamedTuple):
    long_options: Mapping[str, ArgCheck]
    short_no_arg: FrozenSet[str]
    short_with_num: FrozenSet[str]
    short_disabled: FrozenSet[str]

    def classify_long(self, name: str) -> Optional[ArgCheck]:
        return self.long_options.get(name)

    def is_short_allowed_no_arg(self, letter: str) -> bool:
        return letter in self.short_no_arg

    def is_short_allowed_with_number(self, letter: str) -> bool:
        return letter in self.short_with_num

    def is_short_disabled(self, letter: str) -> bool:
        return letter in self.short_disabled


def build_policy(read_only=False, short_disabled=DEFAULT_SHORT_DISABLED, disabled=()) -> OptionPolicy:
    long_options: Dict[str, ArgCheck] = dict(LONG_OPTIONS)
    if read_only:
        for name in READ_ONLY_FORBIDDEN:
            long_options[name] = ArgCheck.FORBIDDEN
    for name in disabled:
        # Configuration may only take options away
        if name in long_options:
            long_options[name] = ArgCheck.FORBIDDEN
        else:
            log.debug("Ignoring unknown option '%s' in disabled list", name)

    short_disabled = frozenset(short_disabled)
    return OptionPolicy(
        long_options=MappingProxyType(long_options),
        short_no_arg=frozenset(SHORT_NO_ARG) - short_disabled,
        short_with_num=frozenset(SHORT_WITH_NUM) - short_disabled,
        short_disabled=short_disabled,
    )


###############################################################################
# Invocation and session mode
###############################################################################


class SessionMode(NamedTuple):
    read_only: bool
    am_sender: bool


def parse_invocation(argv: List[str]) -> Tuple[bool, str]:
    """
    Parse our own arguments from authorized_keys: [-ro] SUBDIR
    """
    args = list(argv)
    read_only = bool(args) and args[0] == "-ro"
    if read_only:
        args.pop(0)
    if not args:
        raise ConfigurationError("No subdirectory specified\n" + usage())

    root = os.path.realpath(args[0])
    if root != "/" and not os.path.isdir(root):
        raise ConfigurationError("Restricted directory does not exist!")

    return read_only, root


_RSYNC_PREFIX = re.compile(r"^rsync[ \t\n\r\f\v]+")
_SERVER_PREFIX = re.compile(r"^--server[ \t\n\r\f\v]")
_SENDER_PREFIX = re.compile(r"^--server[ \t\n\r\f\v]+--sender[ \t\n\r\f\v]")


def read_session(original_command: Optional[str], read_only: bool) -> Tuple[SessionMode, str]:
    """
    Check the request is an rsync server invocation and work out its direction

    Returns the session mode and the request with the leading "rsync" removed.
    """
    if original_command is None:
        raise ProtocolPreconditionError("Not invoked via sshd\n" + usage())

    match = _RSYNC_PREFIX.match(original_command)
    if not match:
        raise ProtocolPreconditionError("SSH_ORIGINAL_COMMAND='{}' is not rsync".format(original_command))
    command = original_command[match.end():]

    if not _SERVER_PREFIX.match(command):
        raise ProtocolPreconditionError("--server option is not first")

    # Restrictive on purpose: --sender must directly follow --server
    am_sender = bool(_SENDER_PREFIX.match(command))
    if read_only and not am_sender:
        raise PolicyViolation("-ro: sending to read-only server not allowed")

    return SessionMode(read_only=read_only, am_sender=am_sender), command


###############################################################################
# Tokenizer
###############################################################################


def tokenize(command: str) -> Iterator[str]:
    """
    Split a request into tokens on unescaped whitespace

    Escapes are kept verbatim; a backslash always takes the next character
    with it.
    """
    token = []
    i = 0
    while i < len(command):
        char = command[i]
        if char == "\\" and i + 1 < len(command):
            token.append(command[i:i + 2])
            i += 2
            continue
        if char in WHITESPACE:
            if token:
                yield "".join(token)
                token = []
        else:
            token.append(char)
        i += 1
    if token:
        yield "".join(token)


###############################################################################
# Path sanitizer
###############################################################################

# Escapes in front of these survive sanitizing so the glob expander can honour them
GLOB_SPECIALS = "\\*?[]{},"


def unescape(value: str, keep: str = "") -> str:
    """
    Remove one level of backslash escaping, except in front of characters in `keep`
    """
    result = []
    i = 0
    while i < len(value):
        char = value[i]
        if char == "\\" and i + 1 < len(value):
            escaped = value[i + 1]
            if escaped in keep:
                result.append(char)
            result.append(escaped)
            i += 2
            continue
        result.append(char)
        i += 1
    return "".join(result)


def _has_parent_segment(path: str) -> bool:
    return ".." in path.split("/")


def sanitize_path(value: str, root: str) -> str:
    """
    Confine a positional path argument to the restricted root

    Paths are relative to the restricted root (we have already chdir'd
    there), so a leading slash is dropped. The result still carries the
    escapes in front of glob characters.
    """
    path = unescape(value, keep=GLOB_SPECIALS)
    if root != "/":
        path = re.sub("/+", "/", path)
        if _has_parent_segment(unescape(path)):
            raise TraversalAttempt("Do not use .. in any path!")
        if path.startswith("/"):
            path = path[1:]
        path = path or "."

    # rsync keeps parsing options after the paths; "-x" must stay a file name
    if path.startswith("-"):
        path = "./" + path
    return path


def sanitize_option_arg(option: str, value: str, check: ArgCheck, root: str, session: SessionMode) -> str:
    """
    Unescape an option argument and, when it names a path on this side, anchor it in the root
    """
    arg = unescape(value)
    if root == "/":
        return arg

    if check == ArgCheck.CHECK_ALWAYS or (check == ArgCheck.CHECK_WHEN_RECEIVING and not session.am_sender):
        arg = re.sub("/+", "/", arg)
        if _has_parent_segment(arg):
            raise TraversalAttempt(
                "Do not use .. in --{}; anchor the path at the root of your restricted dir.".format(option)
            )
        if arg.startswith("/"):
            arg = root + arg
    return arg


###############################################################################
# Parse state machine
###############################################################################


class Phase(enum.Enum):
    IN_OPTIONS = "options"
    IN_ARGUMENTS = "arguments"
    AWAITING_ARGUMENT = "awaiting-argument"


class ParseState(NamedTuple):
    phase: Phase = Phase.IN_OPTIONS
    option: Optional[str] = None
    check: Optional[ArgCheck] = None


class ParsedCommand(NamedTuple):
    options: List[str]
    args: List[str]


def _is_ascii_digits(value: str) -> bool:
    return bool(value) and all("0" <= char <= "9" for char in value)


def _is_word_char(char: str) -> bool:
    return char.isascii() and (char.isalnum() or char == "_")


def _is_protocol_suffix(value: str) -> bool:
    """
    Match the -e.xxx capability suffix, e.g. "e.iLsfxC" or "e31.iLsfxC"
    """
    if not value.startswith("e"):
        return False
    digits, dot, flags = value[1:].partition(".")
    if not dot:
        return False
    if digits and not _is_ascii_digits(digits):
        return False
    return all(_is_word_char(char) for char in flags)


def _allowed_run(body: str, policy: OptionPolicy) -> int:
    """
    Length of the leading run of letters allowed without an argument
    """
    i = 0
    while i < len(body) and policy.is_short_allowed_no_arg(body[i]):
        i += 1
    return i


def is_short_no_arg(token: str, policy: OptionPolicy) -> bool:
    if not token.startswith("-"):
        return False
    body = token[1:]
    rest = body[_allowed_run(body, policy):]
    return rest == "" or _is_protocol_suffix(rest)


def is_short_with_number(token: str, policy: OptionPolicy) -> bool:
    if not token.startswith("-") or len(token) < 3:
        return False
    return policy.is_short_allowed_with_number(token[1]) and _is_ascii_digits(token[2:])


def disabled_short_letter(token: str, policy: OptionPolicy) -> Optional[str]:
    if not token.startswith("-") or not policy.short_disabled:
        return None
    body = token[1:]
    run = _allowed_run(body, policy)
    if run < len(body) and policy.is_short_disabled(body[run]):
        return body[run]
    return None


def _step_option(token: str, parsed: ParsedCommand, root: str, session: SessionMode, policy: OptionPolicy) -> ParseState:
    parsed.options.append(token)

    if token == ".":
        return ParseState(Phase.IN_ARGUMENTS)
    if token == "-":
        raise MalformedSyntax("invalid option: '-'")
    if is_short_no_arg(token, policy) or is_short_with_number(token, policy):
        return ParseState()

    if token.startswith("--") and len(token) > 2 and token[2] != "=":
        name, has_arg, arg = token[2:].partition("=")
        check = policy.classify_long(name)
        if check is None:
            raise UnknownOption("unrecognized option --{}".format(name))
        if check == ArgCheck.FORBIDDEN:
            raise DisabledOption("option --{} has been disabled on this server.".format(name))
        if check == ArgCheck.NO_ARG:
            return ParseState()
        if not has_arg:
            return ParseState(Phase.AWAITING_ARGUMENT, name, check)
        parsed.options[-1] = "--{}={}".format(name, sanitize_option_arg(name, arg, check, root, session))
        return ParseState()

    letter = disabled_short_letter(token, policy)
    if letter is not None:
        raise DisabledOption("option -{} has been disabled on this server.".format(letter))

    raise MalformedSyntax("invalid rsync-command syntax or options")


def step(state: ParseState, token: str, parsed: ParsedCommand, root: str, session: SessionMode, policy: OptionPolicy) -> ParseState:
    """
    Consume a single token and return the next state
    """
    if state.phase == Phase.AWAITING_ARGUMENT:
        parsed.options.append(sanitize_option_arg(state.option, token, state.check, root, session))
        return ParseState()

    if state.phase == Phase.IN_OPTIONS:
        return _step_option(token, parsed, root, session, policy)

    parsed.args.append(sanitize_path(token, root))
    return state


def parse_command(command: str, root: str, session: SessionMode, policy: OptionPolicy) -> ParsedCommand:
    """
    Validate a request (without the leading "rsync") and split it into options and paths

    Anything that does not positively match a known-safe shape is rejected.
    """
    parsed = ParsedCommand(options=[], args=[])
    state = ParseState()
    for token in tokenize(command):
        log.debug("Token %r in state %s", token, state.phase.value)
        state = step(state, token, parsed, root, session, policy)

    # The "." separating options from paths must have been seen
    if state.phase != Phase.IN_ARGUMENTS:
        raise MalformedSyntax("invalid rsync-command syntax or options")

    return parsed


###############################################################################
# Glob expansion
###############################################################################

default_glob_limit = default_config["glob_limit"]


def _scan_escaped(pattern: str) -> Iterator[Tuple[int, str, bool]]:
    """
    Yield (index, character, escaped) for each logical character of pattern
    """
    i = 0
    while i < len(pattern):
        if pattern[i] == "\\" and i + 1 < len(pattern):
            yield i, pattern[i + 1], True
            i += 2
        else:
            yield i, pattern[i], False
            i += 1


def _find_brace_group(pattern: str) -> Optional[Tuple[int, int, List[Tuple[int, int]]]]:
    """
    Locate the first expandable {...} group

    Returns the group's start and end indexes and the (start, end) span of
    each alternative, or None when there is nothing to expand.
    """
    chars = list(_scan_escaped(pattern))
    for pos, (start, char, escaped) in enumerate(chars):
        if escaped or char != "{":
            continue
        # "{}" is literal
        if pos + 1 < len(chars) and chars[pos + 1][1] == "}" and not chars[pos + 1][2]:
            continue

        depth = 0
        alt_start = start + 1
        alternatives = []
        for index, inner, inner_escaped in chars[pos + 1:]:
            if inner_escaped:
                continue
            if inner == "{":
                depth += 1
            elif inner == "}":
                if depth == 0:
                    alternatives.append((alt_start, index))
                    return start, index, alternatives
                depth -= 1
            elif inner == "," and depth == 0:
                alternatives.append((alt_start, index))
                alt_start = index + 1
        # Unmatched "{" is literal, and so is everything after it
        return None
    return None


def expand_braces(pattern: str, limit: int = default_glob_limit) -> List[str]:
    """
    Expand csh-style {a,b} groups, nested groups included
    """
    results = []
    pending = [pattern]
    while pending:
        current = pending.pop(0)
        group = _find_brace_group(current)
        if group is None:
            results.append(current)
        else:
            start, end, alternatives = group
            prefix, suffix = current[:start], current[end + 1:]
            pending = [prefix + current[a:b] + suffix for a, b in alternatives] + pending
        if len(results) + len(pending) > limit:
            raise ExpansionLimitExceeded("Too many expansions of '{}'".format(unescape(pattern)))
    return results


def _glob_pattern(pattern: str) -> Tuple[str, bool]:
    """
    Turn an escaped pattern into a glob.glob() pattern

    Returns the pattern and whether it has any unescaped wildcard.
    """
    result = []
    magic = False
    for _, char, escaped in _scan_escaped(pattern):
        if escaped and char in "*?[]":
            result.append("[{}]".format(char))
        elif not escaped and char in "*?[":
            magic = True
            result.append(char)
        else:
            result.append(char)
    return "".join(result), magic


def expand_glob(value: str, root: str, limit: int = default_glob_limit) -> List[str]:
    """
    Expand one sanitized positional argument into concrete paths

    A pattern with no wildcard, or with no match, is passed through as its
    literal text.
    """
    paths = []
    for alternative in expand_braces(value, limit):
        # A brace alternative may form ".." or "/..."; check it again
        alternative = sanitize_path(alternative, root)
        pattern, magic = _glob_pattern(alternative)
        matches = sorted(glob.glob(pattern, root_dir=root)) if magic else []
        # A matched file name may itself look like an option
        matches = ["./" + match if match.startswith("-") else match for match in matches]
        paths.extend(matches or [unescape(alternative)])
        if len(paths) > limit:
            raise ExpansionLimitExceeded("Too many expansions of '{}'".format(unescape(value)))
    return paths


def expand_args(args: List[str], root: str, limit: int = default_glob_limit) -> List[str]:
    paths = []
    for arg in args:
        paths.extend(expand_glob(arg, root, limit))
    return paths or ["."]


def build_argv(parsed: ParsedCommand, root: str, limit: int = default_glob_limit) -> List[str]:
    return parsed.options + expand_args(parsed.args, root, limit)


###############################################################################
# Audit log
###############################################################################


def client_host(ssh_connection: Optional[str]) -> str:
    """
    Name the client from SSH_CONNECTION ("client_addr client_port server_addr server_port")
    """
    fields = (ssh_connection or "").split()
    if not fields:
        return "unknown"
    host = fields[0]
    if host.startswith("::ffff:"):
        host = host[len("::ffff:"):]
    try:
        return socket.gethostbyaddr(host)[0]
    except (OSError, UnicodeError):
        return host


def format_audit_line(argv: List[str], host: str, now: time.struct_time) -> str:
    return "%02d:%02d %-13s [%s]\n" % (now.tm_hour, now.tm_min, host, " ".join(argv))


def write_audit_log(logfile: Optional[str], argv: List[str], ssh_connection: Optional[str], now=None) -> bool:
    """
    Append one line to the audit log, if the operator created one
    """
    if not logfile or not os.path.isfile(logfile):
        return False
    line = format_audit_line(argv, client_host(ssh_connection), now or time.localtime())
    try:
        with open(logfile, "a") as auditfile:
            auditfile.write(line)
    except OSError as e:
        log.warning("Unable to write audit log %s: %s", logfile, e)
        return False
    return True


###############################################################################
# Dispatch
###############################################################################


def dispatch(argv: List[str], config: dict) -> None:
    """
    Replace this process with sudo running the real rsync; only returns by raising
    """
    sudo_command = config["sudo_command"]
    command = [sudo_command, "-u", config["sudo_user"], config["rsync_command"]] + argv
    log.info("Running %s", " ".join(command))
    try:
        os.execv(sudo_command, command)
    except OSError as e:
        raise DispatchFailure("exec({} {}) failed: {}".format(config["rsync_command"], " ".join(argv), e))


def run(argv: List[str], environ: Mapping[str, str], config_file=None) -> None:
    read_only, root = parse_invocation(argv)
    config = load_config(config_file)
    setup_logging(config)

    session, command = read_session(environ.get("SSH_ORIGINAL_COMMAND"), read_only)
    policy = build_policy(read_only, config["short_disabled"], config["disabled_options"])

    # The audit log lives relative to where sshd started us, not the restricted dir
    audit_log = config["audit_log"]
    if audit_log:
        audit_log = os.path.abspath(audit_log)

    try:
        os.chdir(root)
    except OSError as e:
        raise ConfigurationError("Unable to chdir to restricted dir: {}".format(e.strerror or e))

    parsed = parse_command(command, root, session, policy)
    final_argv = build_argv(parsed, root, config["glob_limit"])

    log.info("Accepted %s request in %s: %s", "pull" if session.am_sender else "push", root, " ".join(final_argv))
    write_audit_log(audit_log, final_argv, environ.get("SSH_CONNECTION"))

    # Note: This assumes that the rsync protocol will not be maliciously hijacked.
    dispatch(final_argv, config)


def main():
    setup_logging()
    try:
        run(sys.argv[1:], os.environ)
    except RrsyncError as e:
        log.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
