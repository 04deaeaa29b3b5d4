"""
Core logic for the Rustfmt Sublime Text plugin.

This module contains pure Python code without any Sublime Text dependencies,
making it testable with pytest outside of Sublime Text environment. The editor
is reached only through the EditorHost interface, which RustFmt.py implements
on top of sublime.View.
"""

import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
import threading
from typing import Any, Callable, List, NamedTuple, Optional, Tuple
from urllib.parse import quote


logger = logging.getLogger(__name__)

# Keywords used as structural anchors when encoding positions
WORD_PATTERN = re.compile(
    r"\b(else|enum|fn|for|if|let|loop|match|struct|union|unsafe|while)\b"
)
LINE_PATTERN = re.compile(r"(\n)")

TEMP_FILE_PREFIX = "rustfmt"
DIAGNOSTICS_NAME = "rustfmt"

PLAYPEN_URL_FORMAT = "https://play.rust-lang.org/?code=%s"
SHORTENER_URL_FORMAT = "https://is.gd/create.php?format=simple&url=%s"
PLAYPEN_MAX_LENGTH = 5000

PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"


class RustfmtError(Exception):
    """Base class for errors reported by the plugin."""


class ToolNotFound(RustfmtError):
    def __init__(self, path: str):
        super().__init__(f'Could not locate executable "{path}"')
        self.path = path


class FormatFailed(RustfmtError):
    def __init__(
        self,
        status_line: str,
        location: Optional["ErrorLocation"] = None,
        detail: Optional[str] = None,
    ):
        message = f"rustfmt {status_line.strip()}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.status_line = status_line
        self.location = location
        self.detail = detail


class PayloadTooLarge(RustfmtError):
    def __init__(self, length: int, limit: int = PLAYPEN_MAX_LENGTH):
        super().__init__(
            f"encoded playpen data exceeds {limit} character limit (length {length})"
        )
        self.length = length
        self.limit = limit


class ShortenFailed(RustfmtError):
    def __init__(self, response: str):
        super().__init__(f"failed to shorten playpen url: {response}")
        self.response = response


# Position codec


class Fingerprint(NamedTuple):
    """Formatting-invariant description of a position in a buffer."""

    token_count: int
    line_count: int
    column_offset: int


def _count_range_matches(
    pattern: "re.Pattern[str]", text: str, start: int, max_beginning: int
) -> Tuple[int, Optional[int]]:
    """
    Count matches of pattern from start that begin at or before max_beginning.

    Returns:
        Tuple of (count, beginning) where beginning is the start of the last
        counted match, or None if nothing was counted
    """
    count = 0
    beginning = None
    point = start

    while point < max_beginning:
        match = pattern.search(text, point)
        if match is None or match.end() > max_beginning:
            break
        count += 1
        beginning = match.start()
        point = match.end()

    # max_beginning may lie in the middle of the next match
    match = pattern.search(text, point)
    if match is not None and match.start() <= max_beginning:
        count += 1
        beginning = match.start()

    return count, beginning


def encode_position(
    text: str, offset: int, word_pattern: "re.Pattern[str]" = WORD_PATTERN
) -> Fingerprint:
    """
    Describe offset by the tokens and line breaks that precede it.

    The result is (number of token matches up to offset, number of line breaks
    between the last of those tokens and offset, column after the last line
    break). The column is -1 when offset sits exactly on the last counted
    line break.

    Args:
        text: Buffer content
        offset: Position in text, clamped to [0, len(text)]
        word_pattern: Token pattern, must match the one used for decoding

    Returns:
        Fingerprint for the position
    """
    offset = max(0, min(offset, len(text)))

    tokens, anchor = _count_range_matches(word_pattern, text, 0, offset)
    if anchor is None:
        anchor = 0

    lines, last_break = _count_range_matches(LINE_PATTERN, text, anchor, offset)

    if lines > 0:
        if last_break == offset:
            column = -1
        else:
            column = offset - (last_break + 1)
    else:
        column = offset - anchor

    return Fingerprint(tokens, lines, column)


def _forward(
    pattern: "re.Pattern[str]", text: str, point: int, count: int, max_pos: int
) -> Tuple[int, int]:
    """
    Move to the beginning of the count-th match of pattern after point.

    Returns the new point and max_pos lowered to the beginning of the
    following match, so the final position never runs into another match.
    """
    if point >= max_pos:
        return point, max_pos

    beginning = point
    search_from = point
    for _ in range(count):
        match = pattern.search(text, search_from)
        if match is None:
            break
        beginning = match.start()
        search_from = match.end()

    match = pattern.search(text, search_from)
    if match is not None:
        max_pos = min(max_pos, match.start())

    return beginning, max_pos


def decode_position(
    text: str, fingerprint: Fingerprint, word_pattern: "re.Pattern[str]" = WORD_PATTERN
) -> int:
    """
    Find the offset in text described by a fingerprint from encode_position.

    The column is clamped to the end of its line, and the result never passes
    the token or line break that follows the anchor.

    Args:
        text: Buffer content, usually the reformatted one
        fingerprint: Result of encode_position on the original content
        word_pattern: Token pattern used for encoding

    Returns:
        Offset in text
    """
    tokens, lines, column = fingerprint

    max_pos = len(text)
    point, max_pos = _forward(word_pattern, text, 0, tokens, max_pos)
    point, max_pos = _forward(LINE_PATTERN, text, point, lines, max_pos)

    if lines > 0:
        point = min(point + 1, len(text))

    line_end = text.find("\n", point)
    if line_end == -1:
        line_end = len(text)

    if line_end - point > column:
        point += column
    else:
        point = line_end

    return max(0, min(point, max_pos))


# Editor host interface


class EditorHost:
    """
    Editor services used by the format supervisor.

    Buffers are views of a document that may share its content (clones,
    indirect buffers). Windows display a buffer and carry their own cursor
    and scroll start. Offsets are character offsets into the buffer text.
    """

    def buffers_sharing_content(self, document: Any) -> List[Any]:
        raise NotImplementedError

    def windows_showing(self, buffer: Any) -> List[Any]:
        raise NotImplementedError

    def buffer_text(self, buffer: Any) -> str:
        raise NotImplementedError

    def replace_buffer_text(self, buffer: Any, text: str) -> None:
        raise NotImplementedError

    def buffer_file_name(self, buffer: Any) -> Optional[str]:
        raise NotImplementedError

    def buffer_cursor(self, buffer: Any) -> int:
        raise NotImplementedError

    def set_buffer_cursor(self, buffer: Any, offset: int) -> None:
        raise NotImplementedError

    def buffer_regions(self, buffer: Any) -> List[Tuple[int, int]]:
        """
        Every selection of buffer as (anchor, cursor) pairs, primary first.

        Hosts with a single caret need not override this.
        """
        cursor = self.buffer_cursor(buffer)
        return [(cursor, cursor)]

    def set_buffer_regions(self, buffer: Any, regions: List[Tuple[int, int]]) -> None:
        self.set_buffer_cursor(buffer, regions[0][1])

    def window_buffer(self, window: Any) -> Any:
        raise NotImplementedError

    def window_cursor(self, window: Any) -> int:
        raise NotImplementedError

    def set_window_cursor(self, window: Any, offset: int) -> None:
        raise NotImplementedError

    def window_start(self, window: Any) -> int:
        raise NotImplementedError

    def set_window_start(self, window: Any, offset: int) -> None:
        raise NotImplementedError

    def open_diagnostics(self) -> None:
        raise NotImplementedError

    def append_diagnostics(self, text: str) -> None:
        raise NotImplementedError

    def close_diagnostics(self) -> None:
        raise NotImplementedError

    def show_diagnostics(self, location: Optional["ErrorLocation"]) -> None:
        raise NotImplementedError

    def schedule(self, callback: Callable[[], None]) -> None:
        """Run callback on the editor's event loop."""
        callback()


class Snapshot:
    """
    Encoded cursor (and scroll start, for windows) of one buffer or window.

    Buffer snapshots also carry every selection as (anchor, cursor)
    fingerprint pairs; cursor is the primary selection's cursor.
    """

    def __init__(
        self,
        target: Any,
        cursor: Fingerprint,
        scroll: Optional[Fingerprint] = None,
        is_window: bool = False,
        regions: Optional[List[Tuple[Fingerprint, Fingerprint]]] = None,
    ):
        self.target = target
        self.cursor = cursor
        self.scroll = scroll
        self.is_window = is_window
        self.regions = regions or []

    def __repr__(self) -> str:
        kind = "window" if self.is_window else "buffer"
        return f"Snapshot({kind} {self.target!r} cursor={self.cursor} scroll={self.scroll})"


def _snapshot_buffer(host: EditorHost, buffer: Any) -> Snapshot:
    text = host.buffer_text(buffer)
    regions = [
        (encode_position(text, a), encode_position(text, b))
        for a, b in host.buffer_regions(buffer)
    ]
    if regions:
        cursor = regions[0][1]
    else:
        cursor = encode_position(text, host.buffer_cursor(buffer))
    return Snapshot(buffer, cursor, regions=regions)


def take_snapshots(host: EditorHost, document: Any) -> List[Snapshot]:
    """Encode the cursors of every buffer and window that shows document's content."""
    buffers = host.buffers_sharing_content(document)
    snapshots = [_snapshot_buffer(host, buffer) for buffer in buffers]

    for buffer in buffers:
        text = host.buffer_text(buffer)
        for window in host.windows_showing(buffer):
            snapshots.append(
                Snapshot(
                    window,
                    cursor=encode_position(text, host.window_cursor(window)),
                    scroll=encode_position(text, host.window_start(window)),
                    is_window=True,
                )
            )

    return snapshots


def restore_snapshots(host: EditorHost, document: Any, snapshots: List[Snapshot]) -> None:
    """
    Move every snapshot target back to its encoded position in the current text.

    Windows showing document itself keep their scroll start so the active
    viewport does not jump.
    """
    for snapshot in snapshots:
        if not snapshot.is_window:
            text = host.buffer_text(snapshot.target)
            if snapshot.regions:
                regions = [
                    (decode_position(text, a), decode_position(text, b))
                    for a, b in snapshot.regions
                ]
                host.set_buffer_regions(snapshot.target, regions)
            else:
                host.set_buffer_cursor(snapshot.target, decode_position(text, snapshot.cursor))
            continue

        buffer = host.window_buffer(snapshot.target)
        text = host.buffer_text(buffer)
        start = decode_position(text, snapshot.scroll)
        point = decode_position(text, snapshot.cursor)
        if buffer != document:
            host.set_window_start(snapshot.target, start)
        host.set_window_cursor(snapshot.target, point)


# Format supervisor


class FormatSettings:
    """Settings for one format run."""

    def __init__(
        self,
        rustfmt_path: str = "rustfmt",
        rustfmt_args: Optional[List[str]] = None,
        replace_on_failure: bool = False,
        initial_wait_ms: int = 100,
        cwd: Optional[str] = None,
    ):
        self.rustfmt_path = rustfmt_path
        self.rustfmt_args = list(rustfmt_args or [])
        self.replace_on_failure = replace_on_failure
        self.initial_wait_ms = initial_wait_ms
        self.cwd = cwd

    @property
    def initial_wait(self) -> float:
        return self.initial_wait_ms / 1000.0

    @classmethod
    def from_settings(cls, settings: Any, cwd: Optional[str] = None) -> "FormatSettings":
        """
        Build settings from anything with a dict-like get(key, default).

        Args:
            settings: sublime.Settings or a plain dict
            cwd: Working directory for the formatter process
        """
        return cls(
            rustfmt_path=settings.get("rustfmt_path", "rustfmt") or "rustfmt",
            rustfmt_args=settings.get("rustfmt_args", []),
            replace_on_failure=bool(settings.get("replace_on_failure", False)),
            initial_wait_ms=int(settings.get("initial_wait_ms", 100)),
            cwd=cwd,
        )


def resolve_executable(path: str) -> Optional[str]:
    """
    Find an executable from a configured name or path.

    Expands ~ and environment variables, then falls back to a PATH lookup.

    Returns:
        Absolute path to the executable, or None if not found
    """
    if not path:
        return None

    expanded_path = os.path.expandvars(os.path.expanduser(path))
    if os.path.isfile(expanded_path) and os.access(expanded_path, os.X_OK):
        return expanded_path

    return shutil.which(expanded_path)


def process_status_line(returncode: int) -> str:
    """Describe a process exit the way a process sentinel reports it."""
    if returncode == 0:
        return "finished\n"
    if returncode < 0:
        return f"killed by signal {-returncode}\n"
    return f"exited abnormally with code {returncode}\n"


def is_success_status(status_line: str) -> bool:
    return re.match(r"^finished", status_line) is not None


def rewrite_temp_path(chunk: str, temp_path: Optional[str], real_path: Optional[str]) -> str:
    """Replace every occurrence of the temporary file's path with the real one."""
    if not temp_path or not real_path:
        return chunk
    return chunk.replace(temp_path, real_path)


class ErrorLocation:
    """First error location found in formatter output."""

    def __init__(self, filename: str, line: int, column: int, message: str, offset: int):
        self.filename = filename
        self.line = line
        self.column = column
        self.message = message
        # Position of the location inside the diagnostics text
        self.offset = offset

    def __repr__(self) -> str:
        return f"ErrorLocation({self.filename}:{self.line}:{self.column} {self.message})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ErrorLocation):
            return NotImplemented
        return (
            self.filename == other.filename
            and self.line == other.line
            and self.column == other.column
            and self.message == other.message
            and self.offset == other.offset
        )


_ARROW_PATTERN = re.compile(r"^[ \t]*-->[ \t]*(.+?):(\d+):(\d+)[ \t]*$", re.MULTILINE)
_MESSAGE_PATTERN = re.compile(r"^(?:error|warning)(?:\[\w+\])?:[ \t]*(.*)$", re.MULTILINE)
# filename:line:column: message, used by older rustfmt releases
# (.+?) is non-greedy so Windows drive letters stay in the filename
_COMPACT_PATTERN = re.compile(r"^(.+?):(\d+):(\d+):[ \t]*([^\n]+)$", re.MULTILINE)


def find_first_error(output: str) -> Optional[ErrorLocation]:
    """
    Find the first error location in rustfmt output.

    Understands rustc style reports:
        error: expected one of `,` or `}`, found `x`
         --> src/main.rs:3:5
    and the compact form:
        src/main.rs:3:5: 3:6 error: unexpected token

    Returns:
        ErrorLocation or None if no location is recognizable
    """
    arrow = _ARROW_PATTERN.search(output)
    compact = _COMPACT_PATTERN.search(output)

    if arrow and (not compact or arrow.start() <= compact.start()):
        message = ""
        for match in _MESSAGE_PATTERN.finditer(output, 0, arrow.start()):
            message = match.group(1).strip()
        return ErrorLocation(
            filename=arrow.group(1).strip(),
            line=int(arrow.group(2)),
            column=int(arrow.group(3)),
            message=message or "error",
            offset=arrow.start(1),
        )

    if compact:
        return ErrorLocation(
            filename=compact.group(1),
            line=int(compact.group(2)),
            column=int(compact.group(3)),
            message=compact.group(4).strip(),
            offset=compact.start(),
        )

    return None


def detect_line_ending(content: str) -> str:
    """
    Detect the line ending style used in content.

    Returns:
        Line ending string: '\\r\\n' for Windows, '\\n' for Unix
    """
    if "\r\n" in content:
        return "\r\n"
    return "\n"


def normalize_line_ending(content: str, line_ending: str) -> str:
    """Convert content to use line_ending ('\\r\\n' or '\\n') throughout."""
    normalized = content.replace("\r\n", "\n")
    if line_ending == "\r\n":
        normalized = normalized.replace("\n", "\r\n")
    return normalized


class FormatJob:
    """
    One run of the formatter over a document.

    Output and completion callbacks are delivered through host.schedule and
    receive this job through their closures. The job is done once the
    temporary file is removed and every snapshot is restored.
    """

    def __init__(
        self,
        host: EditorHost,
        document: Any,
        settings: FormatSettings,
        executable: str,
        snapshots: List[Snapshot],
        on_done: Optional[Callable[["FormatJob"], None]] = None,
    ):
        self.host = host
        self.document = document
        self.settings = settings
        self.executable = executable
        self.snapshots = snapshots
        self.on_done = on_done
        self.real_path = host.buffer_file_name(document)
        self.temp_path: Optional[str] = None
        self.process: Optional[subprocess.Popen] = None
        self.output: List[str] = []
        self.status = PENDING
        self.status_line: Optional[str] = None
        self.error: Optional[RustfmtError] = None
        self.changed = False
        self._original_content = ""
        self._done = threading.Event()

    @property
    def diagnostics(self) -> str:
        return "".join(self.output)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job is done. Returns False on timeout."""
        return self._done.wait(timeout)

    def start(self) -> None:
        """Write the temporary file and spawn the formatter on it."""
        self._original_content = self.host.buffer_text(self.document)

        with tempfile.NamedTemporaryFile(
            "w", prefix=TEMP_FILE_PREFIX, suffix=".rs", encoding="utf-8", newline="", delete=False
        ) as tmp_file:
            self.temp_path = tmp_file.name
            tmp_file.write(self._original_content)

        cmd = [self.executable] + self.settings.rustfmt_args + [self.temp_path]
        self.host.open_diagnostics()

        try:
            # On Windows, hide the console window that would otherwise flash
            creationflags = subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0

            self.process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                cwd=self.settings.cwd,
                creationflags=creationflags,
            )
        except Exception:
            self.status = FAILED
            try:
                _remove_file(self.temp_path)
            finally:
                self._finish()
            raise

        logger.debug("spawned %s (pid %s)", cmd, self.process.pid)

        reader = threading.Thread(
            target=self._read_output, args=(self.process,), name="rustfmt-output", daemon=True
        )
        reader.start()

    def _read_output(self, process: subprocess.Popen) -> None:
        try:
            for raw in iter(process.stdout.readline, b""):
                chunk = raw.decode("utf-8", errors="replace")
                self.host.schedule(lambda chunk=chunk: self._on_output(chunk))
        finally:
            process.stdout.close()
            status_line = process_status_line(process.wait())
            self.host.schedule(lambda: self._on_complete(status_line))

    def _on_output(self, chunk: str) -> None:
        chunk = rewrite_temp_path(chunk, self.temp_path, self.real_path)
        self.output.append(chunk)
        self.host.append_diagnostics(chunk)

    def _on_complete(self, status_line: str) -> None:
        self.status_line = status_line
        logger.debug("rustfmt %s", status_line.strip())
        try:
            try:
                self._reconcile(status_line)
            finally:
                _remove_file(self.temp_path)
        finally:
            self._finish()

    def _reconcile(self, status_line: str) -> None:
        formatted: Optional[str] = None
        read_error: Optional[Exception] = None
        try:
            with open(self.temp_path, encoding="utf-8", newline="") as f:
                formatted = f.read()
        except (OSError, UnicodeDecodeError) as e:
            read_error = e

        if is_success_status(status_line) and formatted is not None:
            self.status = SUCCEEDED
            self.host.close_diagnostics()
            self._replace_content(formatted)
            return

        self.status = FAILED
        detail = None
        if read_error is not None:
            detail = f"could not read formatted output ({read_error})"
            logger.warning("rustfmt %s: %s", status_line.strip(), detail)
            self._on_output(f"rustfmt: {detail}\n")
            detail = rewrite_temp_path(detail, self.temp_path, self.real_path)

        location = find_first_error(self.diagnostics)
        self.error = FormatFailed(status_line, location, detail)
        self.host.show_diagnostics(location)
        if formatted is not None and self.settings.replace_on_failure:
            self._replace_content(formatted)

    def _replace_content(self, formatted: str) -> None:
        formatted = normalize_line_ending(formatted, detect_line_ending(self._original_content))
        if formatted != self.host.buffer_text(self.document):
            self.host.replace_buffer_text(self.document, formatted)
            self.changed = True

    def _finish(self) -> None:
        try:
            restore_snapshots(self.host, self.document, self.snapshots)
            logger.debug("restored %d snapshots", len(self.snapshots))
            if self.on_done is not None:
                self.on_done(self)
        finally:
            self._done.set()


def _remove_file(path: Optional[str]) -> None:
    if path:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


def request_format(
    host: EditorHost,
    document: Any,
    settings: Optional[FormatSettings] = None,
    on_done: Optional[Callable[[FormatJob], None]] = None,
) -> FormatJob:
    """
    Format document with rustfmt, keeping every cursor and scroll position.

    Returns as soon as the formatter is spawned (after a short wait for its
    first output). The document is replaced, and positions restored, when
    the completion callback runs.

    Raises:
        ToolNotFound: If the formatter executable cannot be located. Nothing
            is touched in that case.
    """
    settings = settings or FormatSettings()

    executable = resolve_executable(settings.rustfmt_path)
    if executable is None:
        raise ToolNotFound(settings.rustfmt_path)

    snapshots = take_snapshots(host, document)
    job = FormatJob(host, document, settings, executable, snapshots, on_done)
    job.start()
    job.wait(settings.initial_wait)
    return job


# Rust files and cargo


def is_rust_file(filename: str) -> bool:
    return os.path.basename(filename).endswith(".rs")


def find_config_dir(start_path: str, config_filename: str) -> Optional[str]:
    """
    Search for a file by walking up the directory tree.

    Args:
        start_path: Starting directory or file path
        config_filename: Name of the file to search for

    Returns:
        Directory containing the file, or None if not found
    """
    if os.path.isfile(start_path):
        current = os.path.dirname(start_path)
    else:
        current = start_path

    current = os.path.abspath(current)

    while True:
        if os.path.isfile(os.path.join(current, config_filename)):
            return current

        parent = os.path.dirname(current)
        if parent == current:
            # Reached filesystem root
            return None
        current = parent


def find_cargo_manifest(start_path: str) -> Optional[str]:
    """Path of the closest Cargo.toml above start_path, or None."""
    project_dir = find_config_dir(start_path, "Cargo.toml")
    if project_dir is None:
        return None
    return os.path.join(project_dir, "Cargo.toml")


def build_clippy_args(manifest_path: str, extra_args: Optional[List[str]] = None) -> List[str]:
    """
    Build cargo arguments for running clippy on a project.

    Args:
        manifest_path: Path to the project's Cargo.toml
        extra_args: Additional arguments to pass

    Returns:
        List of command-line arguments (without the cargo executable)
    """
    args = ["clippy", f"--manifest-path={manifest_path}"]

    if extra_args:
        args.extend(extra_args)

    return args


# Playpen sharing


def url_hexify(text: str) -> str:
    """Percent-encode everything except unreserved URL characters."""
    return quote(text, safe="-_.~")


def build_playpen_url(code: str, url_format: str = PLAYPEN_URL_FORMAT) -> str:
    return url_format.replace("%s", url_hexify(code), 1)


def build_shortener_url(
    code: str,
    playpen_url_format: str = PLAYPEN_URL_FORMAT,
    shortener_url_format: str = SHORTENER_URL_FORMAT,
    max_length: int = PLAYPEN_MAX_LENGTH,
) -> str:
    """
    Build the URL that asks the shortener service for a link to code.

    Raises:
        PayloadTooLarge: If the escaped playpen URL is longer than max_length
    """
    escaped_playpen_url = url_hexify(build_playpen_url(code, playpen_url_format))
    if len(escaped_playpen_url) > max_length:
        raise PayloadTooLarge(len(escaped_playpen_url), max_length)
    return shortener_url_format.replace("%s", escaped_playpen_url, 1)


def parse_shortener_response(body: str, ok: bool = True) -> str:
    """
    Extract the shortened URL (or error message) from a shortener response.

    The relevant text is exactly the last line of the response.

    Raises:
        ShortenFailed: If the request failed
    """
    lines = [line for line in body.splitlines() if line.strip()]
    last_line = lines[-1].strip() if lines else ""

    if not ok or not last_line:
        raise ShortenFailed(last_line or "empty response")

    if last_line.lower().startswith("error"):
        raise ShortenFailed(last_line)

    return last_line
