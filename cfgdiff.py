#!/usr/bin/env python3
"""
cfgdiff - Compare configuration files across local, remote and containerized systems.

This module provides functionality to:
- Detect the format of a configuration buffer (INI, JSON, YAML or raw text)
- Compare two INI files section by section and key by key
- Compare two YAML or JSON documents key by key (one recursive tree walker)
- Compare unstructured files line by line, ignoring comments and line order
- Render a colorized report and persist it next to the left file as <path>.diff
- Walk two directory trees and compare every file present in both
- Read files remotely via SSH or through a command prefix (podman exec, oc exec)

Report conventions:
- INI reports are written left-then-right: "-" marks the left value or a key
  missing on the right, "+" the right value or a key only on the right.
- Raw and tree (YAML/JSON) reports treat the left file as the baseline: "+"
  marks lines or keys only in the left file, "-" those only in the right one.

Exit codes:
    - 0: No differences
    - 1: Differences found
    - 2: Operational error (unreadable file, failed remote command, bad usage)
"""

import argparse
import configparser
import hashlib
import json
import logging
import os
import re
import shlex
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger("cfgdiff")

# Comparators log through a CompareContext; without --verbose their
# section/key warnings go to this sink instead of the console.
_QUIET_LOGGER = logging.getLogger("cfgdiff.quiet")
_QUIET_LOGGER.addHandler(logging.NullHandler())
_QUIET_LOGGER.propagate = False

LOG_FORMAT = "%(levelname)-8s %(message)s"

GREEN = "\033[32m"
RED = "\033[31m"
RESET = "\033[0m"


# --- Errors ---


class CfgDiffError(RuntimeError):
    """Base class for every comparison failure reported to the caller."""


class ParseError(CfgDiffError):
    """A buffer could not be decoded in the format it was detected as."""


class StructureMismatch(CfgDiffError):
    """Two tree values at the same path have incompatible shapes."""


class FetchError(CfgDiffError):
    """Reading a local file or running a remote command failed."""


# --- Logging ---


class ColoredFormatter(logging.Formatter):
    """Formatter that colors whole records by level, for terminal output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        color = self.COLORS.get(record.levelname)
        return f"{color}{text}{RESET}" if color else text


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """
    Configure the "cfgdiff" logger for console (and optionally file) output.

    Args:
        verbose: Log progress at INFO level instead of WARNING only
        log_file: Optional path of a log file that receives the same records
            (plain text, appended)

    Notes:
        - Calling it again replaces previously installed handlers
        - Level colors are only used when stderr is a terminal
    """
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.INFO if verbose else logging.WARNING)

    stream = logging.StreamHandler(sys.stderr)
    if sys.stderr.isatty():
        stream.setFormatter(ColoredFormatter(LOG_FORMAT))
    else:
        stream.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(stream)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)


@dataclass
class CompareContext:
    """
    Per-request settings handed to every comparator.

    Attributes:
        verbose: When False, section/key level findings are logged to a
            null sink. The comparison result is the same either way.
    """

    verbose: bool = False

    @property
    def log(self) -> logging.Logger:
        return logger if self.verbose else _QUIET_LOGGER


# --- Remote helpers ---
# Functions for reading configuration from SSH hosts and container runtimes

# Regex pattern to match remote paths: user@host:/path or host:/path
REMOTE_RE = re.compile(r"^(?P<host>[^:@/]+(?:@[^:@/]+)?):(?P<path>.+)$")


def is_remote_path(path: str) -> bool:
    """
    Check if a path is a remote path (SSH/SCP format).

    Examples:
        >>> is_remote_path("user@server:/etc/nova/nova.conf")
        True
        >>> is_remote_path("/etc/nova/nova.conf")
        False
    """
    return bool(REMOTE_RE.match(path))


def parse_remote(path: str) -> Tuple[str, str]:
    """
    Split a remote path into host and remote path components.

    Raises:
        ValueError: If path is not a valid remote path format
    """
    m = REMOTE_RE.match(path)
    if not m:
        raise ValueError(f"Not a remote path: {path}")
    return m.group("host"), m.group("path")


def _ssh_base_cmd(
    host: str, port: Optional[int], identity: Optional[str], extra: Optional[List[str]]
) -> List[str]:
    """
    Build base SSH command with optional port, identity file, and extra options.

    Example:
        >>> _ssh_base_cmd("standalone", 2222, "/path/to/key", ["StrictHostKeyChecking=no"])
        ['ssh', '-p', '2222', '-i', '/path/to/key', '-o', 'StrictHostKeyChecking=no', 'standalone']
    """
    cmd = ["ssh"]
    if port:
        cmd += ["-p", str(port)]
    if identity:
        cmd += ["-i", identity]
    if extra:
        for opt in extra:
            cmd += ["-o", opt]
    cmd.append(host)
    return cmd


def _drain(stream, sink: List[bytes]) -> None:
    for line in iter(stream.readline, b""):
        sink.append(line)
    stream.close()


def run_command(cmd: List[str]) -> bytes:
    """
    Run a command and return its standard output.

    Stdout is read line by line on a background thread while the caller
    blocks on process exit, so large outputs cannot fill the pipe.

    Args:
        cmd: Command and arguments (no shell involved)

    Returns:
        Everything the command wrote to stdout

    Raises:
        FetchError: If the command cannot be started or exits non-zero
    """
    printable = shlex.join(cmd)
    logger.info("Running: %s", printable)
    try:
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        raise FetchError(f"Failed to run '{printable}': {e}") from e

    chunks: List[bytes] = []
    reader = threading.Thread(target=_drain, args=(proc.stdout, chunks), daemon=True)
    reader.start()
    stderr = proc.stderr.read()
    proc.stderr.close()
    returncode = proc.wait()
    reader.join()
    if returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        raise FetchError(f"Command '{printable}' failed with exit code {returncode}: {message}")
    return b"".join(chunks)


def run_fetch_command(prefix: str, path: str) -> bytes:
    """
    Read a file through a command prefix, i.e. run "<prefix> cat <path>".

    Args:
        prefix: Command that reaches the file's system, for example
            "ssh -F ssh.config standalone podman exec keystone" or
            "oc exec glance-external-api-0 -c glance-api --"
        path: Path of the file on that system

    Returns:
        Raw file contents
    """
    return run_command(shlex.split(prefix) + ["cat", path])


def ssh_cat(
    host: str,
    rpath: str,
    port: Optional[int],
    identity: Optional[str],
    extra: Optional[List[str]],
) -> bytes:
    """Read a remote file via SSH cat command."""
    base = _ssh_base_cmd(host, port, identity, extra)
    return run_command(base + [f"cat {shlex.quote(rpath)}"])


def read_source(
    path: str,
    cmd: Optional[str] = None,
    port: Optional[int] = None,
    identity: Optional[str] = None,
    extra: Optional[List[str]] = None,
) -> bytes:
    """
    Load raw bytes from a local file, a remote host or a command prefix.

    Args:
        path: Local path, "host:/path" remote path, or a path inside the
            system reached by cmd
        cmd: Optional command prefix (see run_fetch_command)
        port: Optional SSH port for remote paths
        identity: Optional SSH identity file for remote paths
        extra: Optional SSH options for remote paths

    Raises:
        FetchError: If the file cannot be read
    """
    if cmd:
        return run_fetch_command(cmd, path)
    if is_remote_path(path):
        host, rpath = parse_remote(path)
        return ssh_cat(host, rpath, port, identity, extra)
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise FetchError(f"Failed to open file: '{path}'. {e}") from e


def comma_split(s: Optional[str]) -> Optional[List[str]]:
    """
    Split comma-separated string into list of non-empty trimmed values.

    Example:
        >>> comma_split("StrictHostKeyChecking=no, UserKnownHostsFile=/dev/null")
        ['StrictHostKeyChecking=no', 'UserKnownHostsFile=/dev/null']
    """
    if not s:
        return None
    return [x for x in (p.strip() for p in s.split(",")) if x]


# --- Type detection ---


def _is_json(text: str) -> bool:
    try:
        json.loads(text, strict=False)
    except (ValueError, RecursionError):
        return False
    return True


def _is_yaml(text: str) -> bool:
    import yaml

    try:
        doc = yaml.safe_load(text)
    except (yaml.YAMLError, ValueError, RecursionError):
        return False
    # Any plain text parses as a YAML scalar; only structured documents count.
    return isinstance(doc, (dict, list))


def detect_type(data: bytes) -> str:
    """
    Classify a configuration buffer.

    Args:
        data: Raw file contents (may be empty)

    Returns:
        One of "ini", "json", "yaml" or "raw"

    Notes:
        - A leading "[" (after whitespace) means INI, checked first
        - Then a permissive JSON parse, then a YAML parse that must yield a
          mapping or a sequence
        - Empty, undecodable or unrecognized content is "raw"; never raises
    """
    stripped = data.lstrip()
    if not stripped:
        return "raw"
    if stripped[:1] == b"[":
        return "ini"
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return "raw"
    if _is_json(text):
        return "json"
    if _is_yaml(text):
        return "yaml"
    return "raw"


# --- Parsers ---

# Name nothing in a real file uses, so "[DEFAULT]" stays an ordinary section
_NO_DEFAULT_SECTION = "\x00cfgdiff-defaults"
_IMPLICIT_SECTION = "DEFAULT"


@dataclass
class IniDocument:
    """Sections in file order, each an ordered mapping of key to value."""

    sections: Dict[str, Dict[str, str]] = field(default_factory=dict)


@dataclass
class LineDocument:
    """Raw lines of a file; comments and blank lines are kept but not compared."""

    lines: List[str] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> "LineDocument":
        return cls(data.decode("utf-8", errors="replace").split("\n"))

    def content(self) -> Set[str]:
        return {line for line in self.lines if is_comparable_line(line)}


def is_comparable_line(line: str) -> bool:
    return bool(line.strip()) and not line.startswith("#")


def _new_ini_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(
        strict=False,
        interpolation=None,
        allow_no_value=True,
        default_section=_NO_DEFAULT_SECTION,
    )
    # Keep key case as written in the file
    parser.optionxform = str  # type: ignore[assignment]
    return parser


def parse_ini(data: bytes, label: str) -> IniDocument:
    """
    Parse INI content with a tolerant parser.

    Args:
        data: Raw INI bytes
        label: Name used in error messages

    Returns:
        IniDocument with case-preserved keys in source order

    Raises:
        ParseError: If the content is not valid INI

    Notes:
        - Duplicate sections and keys are merged, the last value wins
        - Keys before the first section header belong to "DEFAULT"
        - "[DEFAULT]" is compared like any other section
        - No interpolation; values are compared as written
    """
    text = data.decode("utf-8", errors="replace")
    parser = _new_ini_parser()
    try:
        try:
            parser.read_string(text, source=label)
        except configparser.MissingSectionHeaderError:
            parser = _new_ini_parser()
            parser.read_string(f"[{_IMPLICIT_SECTION}]\n{text}", source=label)
    except configparser.Error as e:
        raise ParseError(f"Error while loading file {label}: {e}") from e

    doc = IniDocument()
    for name in parser.sections():
        doc.sections[name] = {
            key: "" if value is None else value for key, value in parser.items(name, raw=True)
        }
    return doc


def parse_json(data: bytes, label: str) -> Any:
    try:
        return json.loads(data.decode("utf-8"), strict=False)
    except (ValueError, RecursionError) as e:
        raise ParseError(f"Error unmarshalling {label}: {e}") from e


def parse_yaml(data: bytes, label: str) -> Any:
    """Parse a YAML document; an empty document is an empty mapping."""
    import yaml

    try:
        doc = yaml.safe_load(data.decode("utf-8"))
    except (yaml.YAMLError, ValueError, RecursionError) as e:
        raise ParseError(f"Error unmarshalling {label}: {e}") from e
    return {} if doc is None else doc


# --- Report model ---

ADDED = "added"
REMOVED = "removed"
CHANGED = "changed"
SECTION_ADDED = "section-added"
SECTION_REMOVED = "section-removed"
MARKER = "marker"


@dataclass(frozen=True)
class DiffEntry:
    """
    A single reported difference.

    Attributes:
        kind: One of ADDED, REMOVED, CHANGED, SECTION_ADDED, SECTION_REMOVED, MARKER
        location: Section name, "section:key", dotted key path or line number
        left: Value on the left side, if any
        right: Value on the right side, if any
        text: Rendered form. It may span several lines, for example a section
            header followed by a key line.
    """

    kind: str
    location: str
    left: Optional[str] = None
    right: Optional[str] = None
    text: str = ""

    @property
    def identity(self) -> Tuple[str, str, Optional[str], Optional[str]]:
        return (self.kind, self.location, self.left, self.right)


@dataclass
class ComparisonReport:
    """Ordered, de-duplicated findings of one file-pair comparison."""

    left: str
    right: str
    entries: List[DiffEntry] = field(default_factory=list)
    header: Optional[str] = None

    @property
    def has_differences(self) -> bool:
        return bool(self.entries)

    def index_of(self, text: str) -> int:
        for i, entry in enumerate(self.entries):
            if entry.text == text:
                return i
        return -1

    def append(self, entry: DiffEntry) -> None:
        self.entries.append(entry)

    def append_unique(self, entry: DiffEntry) -> bool:
        """
        Append entry unless an equal finding (same kind, location and values)
        was already reported. The rendered text is not compared, since the
        first entry of an INI section carries the section header.

        Returns:
            True if the entry was appended
        """
        identity = entry.identity
        if any(e.identity == identity for e in self.entries):
            return False
        self.entries.append(entry)
        return True

    def insert(self, index: int, entry: DiffEntry) -> None:
        self.entries.insert(index, entry)

    def finalize(self) -> "ComparisonReport":
        """Set the summary header when anything was found."""
        self.header = f"difference between {self.left} and {self.right}\n" if self.entries else None
        return self

    def lines(self) -> List[str]:
        head = [self.header] if self.header else []
        return head + [entry.text for entry in self.entries]

    def text(self) -> str:
        return "".join(self.lines())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "left": self.left,
            "right": self.right,
            "has_differences": self.has_differences,
            "header": self.header,
            "entries": [
                {"kind": e.kind, "location": e.location, "left": e.left, "right": e.right}
                for e in self.entries
            ],
            "lines": self.lines(),
        }


# --- INI comparator ---


def compare_ini(
    left_data: bytes,
    right_data: bytes,
    left_label: str,
    right_label: str,
    ctx: Optional[CompareContext] = None,
) -> ComparisonReport:
    """
    Compare two INI files section by section and key by key.

    Args:
        left_data: Left INI content
        right_data: Right INI content
        left_label: Left file name used in the report header
        right_label: Right file name used in the report header
        ctx: Optional request context (verbosity)

    Returns:
        ComparisonReport. Entries are:
        - "-[S]" for a section missing on the right, then "-k=v" per key
        - "-k=v" for a key missing on the right
        - "-k=left" and "+k=right" (one entry) for a changed value
        - "+k=v" for a key only on the right
        - "+[S]" for a section only on the right, then "+k=v" per key
        The first entry of a section is prefixed with "[S]" once.

    Raises:
        ParseError: If either side is not valid INI (callers fall back to
            compare_raw)
    """
    ctx = ctx or CompareContext()
    log = ctx.log
    left_doc = parse_ini(left_data, left_label)
    right_doc = parse_ini(right_data, right_label)
    report = ComparisonReport(left_label, right_label)
    opened: Set[str] = set()

    def emit(section: str, kind: str, location: str, body: str, left=None, right=None) -> bool:
        prefix = "" if section in opened else f"[{section}]\n"
        entry = DiffEntry(kind, location, left, right, prefix + body)
        if report.append_unique(entry):
            opened.add(section)
            return True
        return False

    def emit_section(section: str, kind: str, sign: str) -> None:
        if report.append_unique(DiffEntry(kind, section, text=f"{sign}[{section}]\n")):
            opened.add(section)

    for name, left_keys in left_doc.sections.items():
        right_keys = right_doc.sections.get(name)
        if right_keys is None:
            log.warning("Difference detected. Section: %s not found in: %s", name, right_label)
            emit_section(name, SECTION_REMOVED, "-")
            for key, value in left_keys.items():
                emit(name, REMOVED, f"{name}:{key}", f"-{key}={value}\n", left=value)
            continue

        for key, value in left_keys.items():
            if key not in right_keys:
                if emit(name, REMOVED, f"{name}:{key}", f"-{key}={value}\n", left=value):
                    log.warning(
                        "Difference detected. Section: %s Key %s not found in: %s",
                        name,
                        key,
                        right_label,
                    )
            elif right_keys[key] != value:
                other = right_keys[key]
                body = f"-{key}={value}\n+{key}={other}\n"
                if emit(name, CHANGED, f"{name}:{key}", body, left=value, right=other):
                    log.warning(
                        "Difference detected: Values are not equal: %s and %s Section: %s Key %s",
                        value,
                        other,
                        name,
                        key,
                    )
        for key, value in right_keys.items():
            if key not in left_keys:
                if emit(name, ADDED, f"{name}:{key}", f"+{key}={value}\n", right=value):
                    log.warning(
                        "Difference detected. Section: %s Key %s not found in: %s",
                        name,
                        key,
                        left_label,
                    )

    for name, right_keys in right_doc.sections.items():
        if name in left_doc.sections:
            continue
        log.warning("Difference detected. Section: %s not found in: %s", name, left_label)
        emit_section(name, SECTION_ADDED, "+")
        for key, value in right_keys.items():
            emit(name, ADDED, f"{name}:{key}", f"+{key}={value}\n", right=value)

    if report.entries:
        log.warning("File: %s has difference with: %s", left_label, right_label)
    return report.finalize()


# --- Tree comparator (YAML / JSON) ---


def _shape(value: Any) -> str:
    if isinstance(value, dict):
        return "mapping"
    if isinstance(value, (list, tuple)):
        return "sequence"
    return "scalar"


def render_value(value: Any) -> str:
    """
    Render a tree value as the opaque string used for comparison and output.

    Strings are kept as-is, everything else is JSON-encoded
    (True -> "true", None -> "null", [1, 2] -> "[1, 2]").
    """
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _child_path(path: str, key: Any) -> str:
    return f"{path}.{key}" if path else str(key)


def compare_tree(left: Any, right: Any, path: str = "") -> List[DiffEntry]:
    """
    Recursively compare two decoded YAML/JSON values.

    Args:
        left: Baseline value
        right: Value compared against the baseline
        path: Dotted key path of the values ("" at the document root)

    Returns:
        Entries in discovery order:
        - "+path: value" (ADDED) for keys only in left
        - "-path: value" (REMOVED) for keys only in right
        - "+path: left" / "-path: right" (CHANGED) for different scalars

    Raises:
        StructureMismatch: On a mapping/sequence/scalar mismatch or a
            sequence length mismatch at any depth. Sequences are compared by
            position, so a reordered list is a mismatch.
    """
    left_shape, right_shape = _shape(left), _shape(right)
    if left_shape != right_shape:
        raise StructureMismatch(
            f"Type mismatch at {path or '<root>'}: "
            f"{type(left).__name__} != {type(right).__name__}"
        )

    entries: List[DiffEntry] = []
    if left_shape == "mapping":
        for key, value in left.items():
            sub = _child_path(path, key)
            if key in right:
                entries.extend(compare_tree(value, right[key], sub))
            else:
                rendered = render_value(value)
                entries.append(DiffEntry(ADDED, sub, left=rendered, text=f"+{sub}: {rendered}\n"))
        for key, value in right.items():
            if key not in left:
                sub = _child_path(path, key)
                rendered = render_value(value)
                entries.append(DiffEntry(REMOVED, sub, right=rendered, text=f"-{sub}: {rendered}\n"))
    elif left_shape == "sequence":
        if len(left) != len(right):
            raise StructureMismatch(
                f"Array length mismatch at {path or '<root>'}: {len(left)} != {len(right)}"
            )
        for i, (a, b) in enumerate(zip(left, right)):
            entries.extend(compare_tree(a, b, f"{path}[{i}]"))
    else:
        lv, rv = render_value(left), render_value(right)
        if lv != rv:
            entries.append(DiffEntry(CHANGED, path, lv, rv, text=f"+{path}: {lv}\n-{path}: {rv}\n"))
    return entries


def _compare_documents(
    left_doc: Any,
    right_doc: Any,
    left_label: str,
    right_label: str,
    ctx: CompareContext,
) -> ComparisonReport:
    report = ComparisonReport(left_label, right_label)
    for entry in compare_tree(left_doc, right_doc):
        if report.append_unique(entry):
            ctx.log.warning("Difference detected at %s (%s)", entry.location, entry.kind)
    if report.entries:
        ctx.log.warning("File: %s has difference with: %s", left_label, right_label)
    return report.finalize()


def compare_json(
    left_data: bytes,
    right_data: bytes,
    left_label: str,
    right_label: str,
    ctx: Optional[CompareContext] = None,
) -> ComparisonReport:
    """Compare two JSON documents with compare_tree; raises ParseError or StructureMismatch."""
    left_doc = parse_json(left_data, left_label)
    right_doc = parse_json(right_data, right_label)
    return _compare_documents(left_doc, right_doc, left_label, right_label, ctx or CompareContext())


def compare_yaml(
    left_data: bytes,
    right_data: bytes,
    left_label: str,
    right_label: str,
    ctx: Optional[CompareContext] = None,
) -> ComparisonReport:
    """Compare two YAML documents with compare_tree; raises ParseError or StructureMismatch."""
    left_doc = parse_yaml(left_data, left_label)
    right_doc = parse_yaml(right_data, right_label)
    return _compare_documents(left_doc, right_doc, left_label, right_label, ctx or CompareContext())


# --- Raw line comparator ---


def _line_marker(index: int) -> DiffEntry:
    return DiffEntry(MARKER, str(index), text=f"@@ line: {index}\n")


def compare_raw(
    left_data: bytes,
    right_data: bytes,
    left_label: str,
    right_label: str,
    ctx: Optional[CompareContext] = None,
) -> ComparisonReport:
    """
    Compare two files as sets of lines.

    Args:
        left_data: Left file content
        right_data: Right file content
        left_label: Left file name used in the report header
        right_label: Right file name used in the report header
        ctx: Optional request context (verbosity)

    Returns:
        ComparisonReport with "@@ line: N" markers followed by "+line" (only
        in left, N is the left index) or "-line" (only in right, N is the
        right index)

    Notes:
        - Comment ("#" prefix) and blank lines are never compared or reported
        - A line counts as present if it appears anywhere on the other side,
          so reordering lines is not a difference
        - A right-only line whose index matches an existing marker is placed
          under that marker instead of opening a new hunk, even though the
          marker was opened for a left index
    """
    ctx = ctx or CompareContext()
    log = ctx.log
    left_doc = LineDocument.from_bytes(left_data)
    right_doc = LineDocument.from_bytes(right_data)
    left_content = left_doc.content()
    right_content = right_doc.content()
    report = ComparisonReport(left_label, right_label)

    for i, line in enumerate(left_doc.lines):
        if not is_comparable_line(line) or line in right_content:
            continue
        log.warning("Line: %s not found in: %s line: %d", line, right_label, i)
        report.append_unique(_line_marker(i))
        report.append(DiffEntry(ADDED, str(i), left=line, text=f"+{line}\n"))

    for j, line in enumerate(right_doc.lines):
        if not is_comparable_line(line) or line in left_content:
            continue
        log.warning("Line: %s not found in: %s line: %d", line, left_label, j)
        marker = _line_marker(j)
        entry = DiffEntry(REMOVED, str(j), right=line, text=f"-{line}\n")
        index = report.index_of(marker.text)
        if index < 0:
            report.append(marker)
            report.append(entry)
        else:
            report.insert(index + 2, entry)

    if report.entries:
        log.warning("File: %s has difference with: %s", left_label, right_label)
    return report.finalize()


# --- File-pair comparison ---

STRUCTURED_COMPARATORS: Dict[str, Callable[..., ComparisonReport]] = {
    "ini": compare_ini,
    "json": compare_json,
    "yaml": compare_yaml,
}


def compare_bytes(
    left_data: bytes,
    right_data: bytes,
    left_label: str,
    right_label: str,
    ctx: Optional[CompareContext] = None,
) -> ComparisonReport:
    """
    Compare two buffers with the comparator that fits their detected format.

    When both sides are detected as the same structured format, that
    comparator runs. On a parse error, a structural mismatch, or a format
    disagreement the raw line comparator is used instead.
    """
    ctx = ctx or CompareContext()
    left_type, right_type = detect_type(left_data), detect_type(right_data)
    comparator = STRUCTURED_COMPARATORS.get(left_type) if left_type == right_type else None
    if comparator is None:
        ctx.log.info(
            "No common type detected (%s vs %s), line by line comparison", left_type, right_type
        )
        return compare_raw(left_data, right_data, left_label, right_label, ctx)

    ctx.log.info("Files detected as %s files, start to process contents", left_type)
    try:
        return comparator(left_data, right_data, left_label, right_label, ctx)
    except (ParseError, StructureMismatch) as e:
        ctx.log.warning(
            "Error while processing files: %s and %s (%s), comparing as raw text",
            left_label,
            right_label,
            e,
        )
        return compare_raw(left_data, right_data, left_label, right_label, ctx)


def default_report_path(label: str) -> str:
    """
    Where the .diff report of a comparison goes by default.

    Local files get a sibling "<path>.diff". Remote labels ("host:/path")
    get "<basename>.diff" in the working directory.
    """
    if is_remote_path(label):
        label = os.path.basename(parse_remote(label)[1])
    return f"{label}.diff"


def write_report(report: ComparisonReport, path: Optional[str] = None) -> Optional[str]:
    """
    Write the uncolored report to disk, creating parent directories.

    Args:
        report: Comparison result
        path: Destination; defaults to default_report_path(report.left)

    Returns:
        Path written, or None when the report is empty (nothing is written)

    Raises:
        FetchError: If the file cannot be written
    """
    if not report.has_differences:
        return None
    path = path or default_report_path(report.left)
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(report.text())
    except OSError as e:
        logger.error("Failed to write diff file in: %s", path)
        raise FetchError(f"Failed to write report file: '{path}'. {e}") from e
    logger.info("Write diff file: %s", path)
    return path


def render_report(lines: List[str], color: bool = True) -> str:
    """
    Render report lines for the console.

    Entries can span several lines, so the lines are joined and split again
    before coloring: "+" lines green, "-" lines red, others unchanged.
    """
    out: List[str] = []
    for line in "".join(lines).split("\n"):
        if color and line.startswith("+"):
            out.append(f"{GREEN}{line}{RESET}")
        elif color and line.startswith("-"):
            out.append(f"{RED}{line}{RESET}")
        else:
            out.append(line)
    return "\n".join(out)


def print_report(report: ComparisonReport, color: bool = True, stream=None) -> None:
    print(render_report(report.lines(), color), file=stream or sys.stdout)


def compare_files(
    left_path: str,
    right_path: str,
    ctx: Optional[CompareContext] = None,
    write: bool = True,
    report_path: Optional[str] = None,
) -> ComparisonReport:
    """
    Read two files, compare them and write "<left_path>.diff" on differences.

    Args:
        left_path: Left file (local or "host:/path")
        right_path: Right file (local or "host:/path")
        ctx: Optional request context (verbosity)
        write: Persist the report when it is not empty
        report_path: Override of the .diff location

    Raises:
        FetchError: If a file cannot be read or the report cannot be written
    """
    ctx = ctx or CompareContext()
    logger.info("Start to compare file contents for: %s and: %s", left_path, right_path)
    left_data = read_source(left_path)
    right_data = read_source(right_path)
    report = compare_bytes(left_data, right_data, left_path, right_path, ctx)
    if write:
        write_report(report, report_path)
    return report


# --- Directory walker ---


def files_equal(path1: str, path2: str) -> bool:
    """Compare two files by MD5 digest."""
    digests = []
    for path in (path1, path2):
        h = hashlib.md5()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                h.update(chunk)
        digests.append(h.hexdigest())
    return digests[0] == digests[1]


@dataclass
class WalkReport:
    """Aggregate result of comparing two directory trees."""

    left: str
    right: str
    missing_paths: List[str] = field(default_factory=list)
    wrong_type_in_left: List[str] = field(default_factory=list)
    wrong_type_in_right: List[str] = field(default_factory=list)
    unmatched_files: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    reports: List[ComparisonReport] = field(default_factory=list)
    visited: Set[frozenset] = field(default_factory=set, repr=False)

    @property
    def has_differences(self) -> bool:
        return bool(
            self.missing_paths
            or self.wrong_type_in_left
            or self.wrong_type_in_right
            or self.unmatched_files
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "left": self.left,
            "right": self.right,
            "has_differences": self.has_differences,
            "missing_paths": self.missing_paths,
            "wrong_type_in_left": self.wrong_type_in_left,
            "wrong_type_in_right": self.wrong_type_in_right,
            "unmatched_files": self.unmatched_files,
            "errors": self.errors,
            "reports": [r.to_dict() for r in self.reports],
        }


def _add_unique(items: List[str], value: str) -> None:
    if value not in items:
        items.append(value)


def _compare_pair(
    walk: WalkReport, src: str, dst: str, ctx: CompareContext, write: bool, reversed_pass: bool
) -> None:
    pair = frozenset((src, dst))
    if pair in walk.visited:
        return
    walk.visited.add(pair)
    left, right = (dst, src) if reversed_pass else (src, dst)
    try:
        if files_equal(left, right):
            return
        logger.warning("Files: %s and: %s are different.", left, right)
        report = compare_files(left, right, ctx, write=False)
    except (CfgDiffError, OSError) as e:
        logger.error("Failed to compare %s and %s: %s", left, right, e)
        walk.errors[left] = str(e)
        return
    if not report.has_differences:
        return
    _add_unique(walk.unmatched_files, left)
    _add_unique(walk.unmatched_files, right)
    walk.reports.append(report)
    if write:
        try:
            write_report(report)
        except FetchError as e:
            walk.errors[left] = str(e)


def _walk_pass(
    walk: WalkReport,
    src_root: str,
    dst_root: str,
    ctx: CompareContext,
    write: bool,
    reversed_pass: bool,
) -> None:
    # In the reversed pass the "wrong type" lists keep their left/right meaning
    src_is_dir_list = walk.wrong_type_in_right if reversed_pass else walk.wrong_type_in_left
    dst_is_dir_list = walk.wrong_type_in_left if reversed_pass else walk.wrong_type_in_right

    for dirpath, dirnames, filenames in os.walk(src_root):
        rel = os.path.relpath(dirpath, src_root)
        dst_dir = os.path.normpath(os.path.join(dst_root, rel))
        descend = []
        for name in sorted(dirnames):
            src = os.path.join(dirpath, name)
            dst = os.path.join(dst_dir, name)
            if not os.path.exists(dst):
                logger.info("Directory is missing: %s", dst)
                _add_unique(walk.missing_paths, src)
            elif not os.path.isdir(dst):
                logger.warning("%s and %s have different type (directory vs file)", src, dst)
                _add_unique(src_is_dir_list, src)
            else:
                descend.append(name)
        dirnames[:] = descend

        for name in sorted(filenames):
            src = os.path.join(dirpath, name)
            dst = os.path.join(dst_dir, name)
            if not os.path.exists(dst):
                logger.warning("File is missing: %s", dst)
                _add_unique(walk.missing_paths, src)
            elif os.path.isdir(dst):
                logger.warning("%s and %s have different type (file vs directory)", src, dst)
                _add_unique(dst_is_dir_list, dst)
            else:
                _compare_pair(walk, src, dst, ctx, write, reversed_pass)


def walk_directories(
    left_dir: str,
    right_dir: str,
    ctx: Optional[CompareContext] = None,
    reverse: bool = False,
    write: bool = True,
) -> WalkReport:
    """
    Compare every file present in both directory trees.

    Args:
        left_dir: Left (origin) directory
        right_dir: Right (destination) directory
        ctx: Optional request context (verbosity)
        reverse: Also walk right_dir to find paths missing on the left
        write: Write a .diff report next to each differing left file

    Returns:
        WalkReport. Errors on one pair are recorded in WalkReport.errors and
        the walk continues. A pair whose .diff cannot be written is still
        listed in unmatched_files, with the write failure in errors.

    Notes:
        - Paths in missing_paths are the existing side's paths
        - A directory missing on the other side is recorded once and not descended
        - Files with identical MD5 digests are not compared further
    """
    ctx = ctx or CompareContext()
    logger.info("Start processing: %s as source and: %s as destination.", left_dir, right_dir)
    walk = WalkReport(left_dir, right_dir)
    _walk_pass(walk, left_dir, right_dir, ctx, write, reversed_pass=False)
    if reverse:
        _walk_pass(walk, right_dir, left_dir, ctx, write, reversed_pass=True)
    return walk


def format_walk_report(walk: WalkReport) -> str:
    sections = [
        ("Missing files or directories", walk.missing_paths),
        ("Files with differences", walk.unmatched_files),
        ("Different file type in origin", walk.wrong_type_in_left),
        ("Different file type in destination", walk.wrong_type_in_right),
        ("Errors", [f"{path}: {msg}" for path, msg in walk.errors.items()]),
    ]
    out = ["", "**** Report ****"]
    for title, items in sections:
        if items:
            out += ["", f"**** {title} ****"] + items
    if len(out) == 2:
        out += ["", "No differences found."]
    return "\n".join(out) + "\n"


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main entry point for cfgdiff CLI tool.

    Compares two files (local, remote via SSH, or reached through a command
    prefix) or two directory trees.

    Exit codes:
        - 0: No differences
        - 1: Differences found
        - 2: Operational error, including a file pair of a directory walk
          that could not be compared or whose report could not be written
    """
    ap = argparse.ArgumentParser(
        description="Compare two configuration files or directories (INI/YAML/JSON/raw).",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog=(
            "Examples:\n"
            "  cfgdiff podman/keystone.conf ocp/keystone.conf\n"
            "  cfgdiff podman-containers/ ocp-pods/ --reverse\n"
            '  cfgdiff /etc/glance/glance-api.conf /etc/glance/glance.conf.d/00-config.conf \\\n'
            '      --left-cmd "ssh -F ssh.config standalone podman exec a6e1ca049eee" \\\n'
            '      --right-cmd "oc exec glance-external-api-0 -c glance-api --"'
        ),
    )
    ap.add_argument("left", help="Left (origin) file or directory.")
    ap.add_argument("right", help="Right (destination) file or directory.")
    ap.add_argument("--left-cmd", help="Command prefix used to cat the left file remotely.")
    ap.add_argument("--right-cmd", help="Command prefix used to cat the right file remotely.")
    ap.add_argument("--ssh-port", type=int)
    ap.add_argument("--ssh-identity")
    ap.add_argument("--ssh-extra", help="Comma separated SSH -o options.")
    ap.add_argument(
        "--reverse", action="store_true", help="For directories, also search right to left."
    )
    ap.add_argument(
        "--quiet", action="store_true", help="Do not print the diff, only the summary."
    )
    ap.add_argument("--verbose", action="store_true", help="Log section/key level findings.")
    ap.add_argument("--log-file", help="Append log records to this file.")
    ap.add_argument("--no-color", action="store_true")
    ap.add_argument("--no-report-file", action="store_true", help="Do not write <left>.diff.")
    ap.add_argument("--output", help="Report file path (default: <left>.diff).")
    ap.add_argument("--format", default="text", choices=["text", "json"])
    args = ap.parse_args(argv)

    setup_logging(args.verbose, args.log_file)
    ctx = CompareContext(verbose=args.verbose)
    color = not args.no_color and sys.stdout.isatty()
    remote = bool(args.left_cmd or args.right_cmd)

    try:
        if not remote and (os.path.isdir(args.left) or os.path.isdir(args.right)):
            if not (os.path.isdir(args.left) and os.path.isdir(args.right)):
                raise FetchError(f"Cannot compare a file with a directory: {args.left} {args.right}")
            walk = walk_directories(
                args.left, args.right, ctx, reverse=args.reverse, write=not args.no_report_file
            )
            if args.format == "json":
                print(json.dumps(walk.to_dict(), indent=2))
            else:
                if not args.quiet:
                    for report in walk.reports:
                        print_report(report, color)
                print(format_walk_report(walk), end="")
            if walk.errors:
                sys.exit(2)
            sys.exit(1 if walk.has_differences else 0)

        extra = comma_split(args.ssh_extra)
        left_data = read_source(args.left, args.left_cmd, args.ssh_port, args.ssh_identity, extra)
        right_data = read_source(
            args.right, args.right_cmd, args.ssh_port, args.ssh_identity, extra
        )
        report = compare_bytes(left_data, right_data, args.left, args.right, ctx)
        if not args.no_report_file:
            report_path = args.output
            if report_path is None and args.left_cmd:
                report_path = f"{os.path.basename(args.left)}.diff"
            write_report(report, report_path)
    except CfgDiffError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)

    if args.format == "json":
        print(json.dumps(report.to_dict(), indent=2))
    elif not args.quiet:
        if report.has_differences:
            print_report(report, color)
        else:
            print(f"No differences between {args.left} and {args.right}")
    sys.exit(1 if report.has_differences else 0)


if __name__ == "__main__":
    main()
