"""Two-line textual progress display for batch runs."""

import os
import pathlib
import shutil
import sys
import threading
import time
import typing

import colorama

BAR_WIDTH = 30


def human_readable_size(num_bytes: int) -> str:
    units = ["B", "KiB", "MiB", "GiB"]
    value = float(num_bytes)
    for unit in units:
        if value < 1024.0 or unit == units[-1]:
            return f"{value:.2f} {unit}"
        value /= 1024.0
    return f"{value:.2f} TiB"


class ProgressReporter:
    """Overall bar plus current-file bar, redrawn in place on ANSI terminals."""

    def __init__(self, total_files: int, stream=None, min_interval: float = 0.1):
        self.total_files = max(total_files, 1)
        self.stream = stream or sys.stdout
        self._printed = False
        self._min_interval = max(0.0, float(min_interval))
        self._is_tty = bool(getattr(self.stream, "isatty", lambda: False)())
        self._last_render = 0.0
        self._last_fraction: dict[int, float] = {}
        self._lock = threading.Lock()
        self._term_width = shutil.get_terminal_size((80, 24)).columns
        self._color = self._is_tty and not os.getenv("NO_COLOR")
        self._green = colorama.Fore.GREEN if self._color else ""
        self._red = colorama.Fore.RED if self._color else ""
        self._reset = colorama.Fore.RESET if self._color else ""
        term = os.getenv("TERM")
        self._supports_ansi = self._is_tty and (
            os.name != "nt"
            or os.getenv("WT_SESSION")
            or os.getenv("ANSICON")
            or (term and term != "dumb")
        )

    def reset_terminal_state(self) -> None:
        with self._lock:
            if self._printed:
                self.stream.write("\n")
                self.stream.flush()
            self._printed = False

    def _render_bar(self, fraction: float) -> str:
        fraction = max(0.0, min(1.0, fraction))
        filled = int(fraction * BAR_WIDTH)
        if filled >= BAR_WIDTH:
            return f"({self._green}{'❚' * BAR_WIDTH}{self._reset})"
        return f"({'❚' * filled}{' ' * (BAR_WIDTH - filled)})"

    def _write(self, line1: str, line2: str, force: bool = False) -> None:
        now = time.monotonic()
        if not force and self._printed and (now - self._last_render) < self._min_interval:
            return
        line1 = line1[:self._term_width]
        line2 = line2[:self._term_width]
        if self._supports_ansi:
            if self._printed:
                self.stream.write("\x1b[1A\r")
            else:
                self.stream.write("\r\x1b[2K")
            self.stream.write("\r\x1b[2K" + line1 + "\n")
            self.stream.write("\r\x1b[2K" + line2)
            self.stream.flush()
        elif not self._printed or force:
            # Non-TTY: only first and forced renders, one line each.
            self.stream.write(line1 + "\n")
            self.stream.write(line2 + "\n")
            self.stream.flush()
        self._printed = True
        self._last_render = now

    def _overall(self) -> "tuple[float, int]":
        overall = sum(self._last_fraction.values()) / self.total_files
        done = sum(1 for frac in self._last_fraction.values() if frac >= 1.0)
        return overall, done

    def update(
        self,
        file_index: int,
        fraction: float,
        phase: str,
        path: "typing.Optional[pathlib.Path]",
        *,
        size_hint: "typing.Optional[tuple[int, int]]" = None
    ) -> None:
        fraction = max(0.0, min(1.0, float(fraction)))
        with self._lock:
            self._last_fraction[file_index] = fraction
            overall, done = self._overall()
            label = path.name if path else ""
            if fraction < 1.0:
                status = f"{done} complete, processing {label}" if label else f"{done} complete"
            else:
                status = f"{done}/{self.total_files} files"
            hint = ""
            if size_hint:
                hint = f" ({human_readable_size(size_hint[0])} -> {human_readable_size(size_hint[1])})"
            line1 = f"Overall {self._render_bar(overall)} {overall * 100:3.0f}% {status}"
            line2 = f"File    {self._render_bar(fraction)} {fraction * 100:3.0f}% phase: {phase}{hint}"
            if label:
                line2 += f" [{label}]"
            self._write(line1.replace("\n", " "), line2.replace("\n", " "), force=fraction >= 1.0)

    def finalize_file(
        self,
        file_index: int,
        path: "typing.Optional[pathlib.Path]",
        *,
        ok: bool = True,
        size_hint: "typing.Optional[tuple[int, int]]" = None
    ) -> None:
        with self._lock:
            self._last_fraction[file_index] = 1.0
            overall, done = self._overall()
            label = f" [{path.name}]" if path else ""
            hint = ""
            if size_hint:
                hint = f" ({human_readable_size(size_hint[0])} -> {human_readable_size(size_hint[1])})"
            mark = f" {self._green}✓{self._reset}" if ok else f" {self._red}✗{self._reset}"
            line1 = f"Overall {self._render_bar(overall)} {overall * 100:3.0f}% {done}/{self.total_files} files"
            line2 = f"File    {self._render_bar(1.0)} 100% phase: {'done' if ok else 'failed'}{hint}{label}{mark}"
            self._write(line1, line2, force=True)
            self.stream.write("\n")
            self.stream.flush()
            self._printed = False
