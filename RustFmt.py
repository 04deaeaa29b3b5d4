"""
Rustfmt plugin for Sublime Text.

This module provides commands and event listeners for formatting Rust files
with rustfmt while keeping every cursor and scroll position, sharing code on
the Rust playground and running clippy.
"""

import os
import subprocess
import sys
import threading
import urllib.error
import urllib.request
from typing import Callable, Dict, List, Optional, Tuple

import sublime
import sublime_plugin

from . import rustfmt_core as core

# Views with a format job in flight
_in_flight: Dict[int, core.FormatJob] = {}

# Guard flag to prevent save loops
_save_guard: Dict[int, bool] = {}


def get_settings() -> sublime.Settings:
    """Get plugin settings."""
    return sublime.load_settings("RustFmt.sublime-settings")


def get_working_dir(view: sublime.View) -> Optional[str]:
    """Directory of the closest Cargo.toml, else the file's directory."""
    file_path = view.file_name()
    if not file_path:
        window = view.window()
        folders = window.folders() if window else []
        return folders[0] if folders else None

    project_dir = core.find_config_dir(file_path, "Cargo.toml")
    return project_dir or os.path.dirname(file_path)


def is_rust_view(view: sublime.View) -> bool:
    """Check if the view holds Rust source."""
    if view.match_selector(0, "source.rust"):
        return True
    file_name = view.file_name()
    return bool(file_name) and core.is_rust_file(file_name)


class _PanelDiagnostics:
    """Show formatter output in an output panel."""

    def __init__(self, window: sublime.Window):
        self.window = window
        self.view: Optional[sublime.View] = None

    def open(self) -> None:
        # create_output_panel clears an existing panel of the same name
        self.view = self.window.create_output_panel(core.DIAGNOSTICS_NAME)
        self.view.settings().set("scroll_past_end", False)

    def append(self, text: str) -> None:
        if self.view:
            self.view.run_command("append", {"characters": text, "force": True})

    def close(self) -> None:
        self.window.destroy_output_panel(core.DIAGNOSTICS_NAME)
        self.view = None

    def show(self) -> None:
        self.window.run_command("show_panel", {"panel": f"output.{core.DIAGNOSTICS_NAME}"})


class _ViewDiagnostics:
    """
    Show formatter output in a scratch tab.

    The tab is only created when there is something to show, so a clean run
    neither opens a tab nor moves focus.
    """

    def __init__(self, window: sublime.Window):
        self.window = window
        self.view: Optional[sublime.View] = None
        self.pending: List[str] = []

    def open(self) -> None:
        self.pending = []
        self.view = None
        name = f"*{core.DIAGNOSTICS_NAME}*"
        for view in self.window.views():
            if view.name() == name:
                self.view = view
                view.run_command("select_all")
                view.run_command("right_delete")
                return

    def append(self, text: str) -> None:
        if self.view and self.view.is_valid():
            self.view.run_command("append", {"characters": text, "force": True})
        else:
            self.pending.append(text)

    def close(self) -> None:
        if self.view and self.view.is_valid():
            self.view.close()
        self.view = None
        self.pending = []

    def show(self) -> None:
        if not (self.view and self.view.is_valid()):
            self.view = self.window.new_file(flags=sublime.TRANSIENT)
            self.view.set_name(f"*{core.DIAGNOSTICS_NAME}*")
            self.view.set_scratch(True)
        if self.pending:
            text = "".join(self.pending)
            self.pending = []
            self.view.run_command("append", {"characters": text, "force": True})
        self.window.focus_view(self.view)


DIAGNOSTICS_DISPLAYS = {
    "panel": _PanelDiagnostics,
    "view": _ViewDiagnostics,
}


class SublimeHost(core.EditorHost):
    """
    EditorHost backed by Sublime views.

    Clones of a view share one sublime.Buffer; each clone is both a buffer
    (own selection) and a window (own viewport).
    """

    def __init__(self, window: sublime.Window, display: str = "panel"):
        self.window = window
        display_class = DIAGNOSTICS_DISPLAYS.get(display, _PanelDiagnostics)
        self.diagnostics = display_class(window)

    def buffers_sharing_content(self, document: sublime.View) -> List[sublime.View]:
        views = document.buffer().views()
        return views or [document]

    def windows_showing(self, buffer: sublime.View) -> List[sublime.View]:
        return [buffer] if buffer.window() else []

    def buffer_text(self, buffer: sublime.View) -> str:
        return buffer.substr(sublime.Region(0, buffer.size()))

    def replace_buffer_text(self, buffer: sublime.View, text: str) -> None:
        buffer.run_command("rustfmt_replace_content", {"content": text})

    def buffer_file_name(self, buffer: sublime.View) -> Optional[str]:
        return buffer.file_name()

    def buffer_cursor(self, buffer: sublime.View) -> int:
        selection = buffer.sel()
        return selection[0].b if len(selection) else 0

    def set_buffer_cursor(self, buffer: sublime.View, offset: int) -> None:
        buffer.sel().clear()
        buffer.sel().add(sublime.Region(offset, offset))

    def buffer_regions(self, buffer: sublime.View) -> List[Tuple[int, int]]:
        regions = [(region.a, region.b) for region in buffer.sel()]
        return regions or [(0, 0)]

    def set_buffer_regions(self, buffer: sublime.View, regions: List[Tuple[int, int]]) -> None:
        selection = buffer.sel()
        selection.clear()
        selection.add_all([sublime.Region(a, b) for a, b in regions])

    def window_buffer(self, window: sublime.View) -> sublime.View:
        return window

    def window_cursor(self, window: sublime.View) -> int:
        return self.buffer_cursor(window)

    def set_window_cursor(self, window: sublime.View, offset: int) -> None:
        # The selection belongs to the view and is restored with its buffer
        # snapshot; setting it here would collapse a multi-selection.
        pass

    def window_start(self, window: sublime.View) -> int:
        return window.visible_region().begin()

    def set_window_start(self, window: sublime.View, offset: int) -> None:
        x, _ = window.viewport_position()
        _, y = window.text_to_layout(offset)
        window.set_viewport_position((x, y), False)

    def open_diagnostics(self) -> None:
        self.diagnostics.open()

    def append_diagnostics(self, text: str) -> None:
        self.diagnostics.append(text)

    def close_diagnostics(self) -> None:
        self.diagnostics.close()

    def show_diagnostics(self, location: Optional[core.ErrorLocation]) -> None:
        self.diagnostics.show()
        view = self.diagnostics.view
        if view and location:
            view.sel().clear()
            view.sel().add(sublime.Region(location.offset, location.offset))
            view.show(location.offset)

    def schedule(self, callback: Callable[[], None]) -> None:
        sublime.set_timeout(callback, 0)


def format_view(
    view: sublime.View, on_done: Optional[Callable[[core.FormatJob], None]] = None
) -> Optional[core.FormatJob]:
    """
    Start formatting a view with rustfmt.

    Returns:
        The running FormatJob, or None if formatting could not start
    """
    view_id = view.buffer_id()
    if view_id in _in_flight:
        sublime.status_message("Rustfmt: Already formatting")
        return None

    window = view.window() or sublime.active_window()
    settings = get_settings()
    host = SublimeHost(window, settings.get("diagnostics_display", "panel"))
    format_settings = core.FormatSettings.from_settings(settings, cwd=get_working_dir(view))
    # Callbacks are delivered on this thread, so waiting here only blocks the UI
    format_settings.initial_wait_ms = 0

    def done(job: core.FormatJob) -> None:
        _in_flight.pop(view_id, None)
        if job.error:
            sublime.status_message(f"Rustfmt: {job.error}")
        elif job.changed:
            sublime.status_message("Rustfmt: Formatted buffer")
        else:
            sublime.status_message("Rustfmt: Already formatted")
        if on_done is not None:
            on_done(job)

    try:
        job = core.request_format(host, view, format_settings, on_done=done)
    except (core.ToolNotFound, OSError) as e:
        sublime.error_message(f"Rustfmt: {e}")
        return None

    # Completion runs on the main thread, so it cannot have fired in between
    if not job.done:
        _in_flight[view_id] = job
    return job


class RustfmtFormatBufferCommand(sublime_plugin.TextCommand):
    """Format the current buffer with rustfmt."""

    def run(self, edit: sublime.Edit) -> None:
        format_view(self.view)

    def is_enabled(self) -> bool:
        return is_rust_view(self.view)


class RustfmtReplaceContentCommand(sublime_plugin.TextCommand):
    """Internal command to replace entire buffer content."""

    def run(self, edit: sublime.Edit, content: str) -> None:
        self.view.replace(edit, sublime.Region(0, self.view.size()), content)


class RustPlaypenCommand(sublime_plugin.TextCommand):
    """Share the selection (or whole buffer) on the Rust playground."""

    def run(self, edit: sublime.Edit) -> None:
        regions = [region for region in self.view.sel() if not region.empty()]
        if regions:
            code = "".join(self.view.substr(region) for region in regions)
        else:
            code = self.view.substr(sublime.Region(0, self.view.size()))

        settings = get_settings()
        try:
            shortener_url = core.build_shortener_url(
                code,
                settings.get("playpen_url_format", core.PLAYPEN_URL_FORMAT),
                settings.get("shortener_url_format", core.SHORTENER_URL_FORMAT),
            )
        except core.PayloadTooLarge as e:
            sublime.error_message(f"Rustfmt: {e}")
            return

        # Run in background thread
        thread = threading.Thread(target=self._shorten, args=(shortener_url,))
        thread.start()

    def _shorten(self, shortener_url: str) -> None:
        def status(msg: str) -> None:
            sublime.set_timeout(lambda: sublime.status_message(msg), 0)

        def error(msg: str) -> None:
            sublime.set_timeout(lambda: sublime.error_message(msg), 0)

        status("Rustfmt: Sharing on playground...")

        request = urllib.request.Request(
            shortener_url, data=b"", method="POST", headers={"User-Agent": "SublimeRustfmt"}
        )
        try:
            with urllib.request.urlopen(request, timeout=30) as response:
                body = response.read().decode("utf-8", errors="replace")
            short_url = core.parse_shortener_response(body)
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            try:
                core.parse_shortener_response(body, ok=False)
            except core.ShortenFailed as failure:
                error(f"Rustfmt: {failure}")
            return
        except urllib.error.URLError as e:
            error(f"Rustfmt: Sharing failed - {e}")
            return
        except core.ShortenFailed as e:
            error(f"Rustfmt: {e}")
            return

        sublime.set_timeout(lambda: sublime.set_clipboard(short_url), 0)
        status(f"Rustfmt: {short_url} (copied to clipboard)")


def run_cargo(
    args: List[str], cwd: Optional[str] = None, timeout_ms: int = 120000
) -> Tuple[int, str]:
    """
    Run cargo with the given arguments.

    Returns:
        Tuple of (return_code, output) with stderr merged into output
    """
    settings = get_settings()
    cargo_path = core.resolve_executable(settings.get("cargo_path", "cargo"))
    if not cargo_path:
        return -1, "cargo not found"

    try:
        creationflags = subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0
        proc = subprocess.run(
            [cargo_path] + args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            cwd=cwd,
            timeout=timeout_ms / 1000.0,
            creationflags=creationflags,
        )
    except subprocess.TimeoutExpired:
        return -1, "cargo timed out"
    except OSError as e:
        return -1, str(e)

    return proc.returncode, proc.stdout.decode("utf-8", errors="replace")


class RustClippyCommand(sublime_plugin.TextCommand):
    """Run clippy on the project the current file belongs to."""

    def run(self, edit: sublime.Edit) -> None:
        file_path = self.view.file_name()
        manifest = core.find_cargo_manifest(file_path) if file_path else None
        if not manifest:
            sublime.status_message("Rustfmt: No Cargo.toml found")
            return

        window = self.view.window()
        if not window:
            return

        args = core.build_clippy_args(manifest, get_settings().get("clippy_args", []))
        sublime.status_message("Rustfmt: Running clippy...")

        def clippy() -> None:
            returncode, output = run_cargo(args, cwd=os.path.dirname(manifest))
            sublime.set_timeout(lambda: self._show(window, manifest, returncode, output), 0)

        threading.Thread(target=clippy).start()

    def _show(self, window: sublime.Window, manifest: str, returncode: int, output: str) -> None:
        panel = window.create_output_panel("rustfmt_clippy")
        panel.settings().set("result_file_regex", r"^\s*--> (.+?):(\d+):(\d+)")
        panel.settings().set("result_base_dir", os.path.dirname(manifest))
        panel.run_command("append", {"characters": output, "force": True})
        panel.set_read_only(True)
        window.run_command("show_panel", {"panel": "output.rustfmt_clippy"})
        status = "finished" if returncode == 0 else f"failed (exit {returncode})"
        sublime.status_message(f"Rustfmt: clippy {status}")


class RustfmtShowInfoCommand(sublime_plugin.TextCommand):
    """Show debug information about the rustfmt configuration."""

    def run(self, edit: sublime.Edit) -> None:
        window = self.view.window()
        if not window:
            return

        panel = window.create_output_panel("rustfmt_info")
        panel.set_read_only(False)

        lines = ["Rustfmt Info\n", "=" * 40 + "\n\n"]

        settings = get_settings()
        rustfmt_path = core.resolve_executable(settings.get("rustfmt_path", "rustfmt"))
        lines.append(f"Rustfmt path: {rustfmt_path or 'Not found'}\n")

        if rustfmt_path:
            try:
                proc = subprocess.run(
                    [rustfmt_path, "--version"],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    timeout=5,
                )
                if proc.returncode == 0:
                    lines.append(f"Version: {proc.stdout.decode('utf-8').strip()}\n")
            except (OSError, subprocess.TimeoutExpired) as e:
                lines.append(f"Version: Error - {e}\n")

        lines.append("\n")

        file_path = self.view.file_name()
        lines.append(f"Current file: {file_path or 'Untitled'}\n")
        if file_path:
            lines.append(f"Working directory: {get_working_dir(self.view)}\n")
            lines.append(f"Cargo manifest: {core.find_cargo_manifest(file_path) or 'Not found'}\n")

        lines.append("\n")

        lines.append("Settings:\n")
        for key, default in (
            ("rustfmt_args", []),
            ("format_on_save", False),
            ("replace_on_failure", False),
            ("diagnostics_display", "panel"),
            ("cargo_path", "cargo"),
        ):
            lines.append(f"  {key}: {settings.get(key, default)}\n")

        panel.run_command("append", {"characters": "".join(lines)})
        panel.set_read_only(True)

        window.run_command("show_panel", {"panel": "output.rustfmt_info"})


class RustfmtEventListener(sublime_plugin.EventListener):
    """Event listener for format-on-save."""

    def on_post_save_async(self, view: sublime.View) -> None:
        if not is_rust_view(view):
            return

        if not get_settings().get("format_on_save", False):
            return

        # Skip the re-save issued after formatting
        view_id = view.buffer_id()
        if _save_guard.get(view_id):
            _save_guard[view_id] = False
            return

        def start() -> None:
            if not view.is_valid():
                return
            change_count = view.change_count()

            def resave(job: core.FormatJob) -> None:
                if not job.changed:
                    return
                # Formatting adds exactly one change; anything else is a user edit
                if view.change_count() != change_count + 1:
                    sublime.status_message("Rustfmt: Skipped save (buffer modified)")
                    return
                _save_guard[view_id] = True
                view.run_command("save")

            format_view(view, on_done=resave)

        # Jobs and their callbacks live on the main thread
        sublime.set_timeout(start, 0)

    def on_pre_close(self, view: sublime.View) -> None:
        """Clean up when the last view of a buffer is closed."""
        others = [other for other in view.buffer().views() if other.id() != view.id()]
        if others:
            return
        view_id = view.buffer_id()
        _save_guard.pop(view_id, None)
        _in_flight.pop(view_id, None)
