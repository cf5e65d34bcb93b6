"""
Terminal output for the luckystack command line.

Colour and glyph palettes (colorama), a tqdm bar fed by pipeline progress
notifications, and formatters for frame-quality and rejection summaries.
"""

from __future__ import annotations

import os
import sys
from collections import Counter
from dataclasses import dataclass

from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from .config import AnalysisResult, RejectedFrame

colorama_init(autoreset=True)


class Colors:
    """Colour codes used by the CLI; emptied when colour is unavailable."""

    TITLE = Fore.CYAN + Style.BRIGHT
    GOOD = Fore.GREEN + Style.BRIGHT
    WARN = Fore.YELLOW
    BAD = Fore.RED + Style.BRIGHT
    LABEL = Fore.MAGENTA
    VALUE = Fore.YELLOW + Style.BRIGHT
    PATH = Fore.CYAN
    BAR = Fore.GREEN
    RESET = Style.RESET_ALL

    @classmethod
    def disable(cls):
        for name in ("TITLE", "GOOD", "WARN", "BAD", "LABEL", "VALUE", "PATH", "BAR", "RESET"):
            setattr(cls, name, "")


class Symbols:
    """Status glyphs (with ASCII fallbacks)."""

    OK = "✔"
    FAIL = "✘"
    WARN = "⚠"
    BULLET = "•"
    MOON = "\U0001F315"

    @classmethod
    def use_ascii(cls):
        cls.OK = "[OK]"
        cls.FAIL = "[X]"
        cls.WARN = "[!]"
        cls.BULLET = "*"
        cls.MOON = "(o)"


def _status(color: str, glyph: str, text: str, stream=None) -> None:
    print(f"{color}{glyph} {text}{Colors.RESET}", file=stream or sys.stdout)


def print_success(text: str) -> None:
    _status(Colors.GOOD, Symbols.OK, text)


def print_warning(text: str) -> None:
    _status(Colors.WARN, Symbols.WARN, text, sys.stderr)


def print_error(text: str) -> None:
    _status(Colors.BAD, Symbols.FAIL, text, sys.stderr)


def print_info(text: str) -> None:
    _status("", Symbols.BULLET, text)


def print_metric(name: str, value: str | int | float, unit: str = "") -> None:
    """Print ``name: value [unit]`` indented under a header."""
    suffix = f" {unit}" if unit else ""
    print(f"  {Colors.LABEL}{name}: {Colors.VALUE}{value}{Colors.RESET}{suffix}")


def print_path(label: str, path: str) -> None:
    print(f"  {label}: {Colors.PATH}{path}{Colors.RESET}")


def print_header(text: str, width: int = 60) -> None:
    rule = "─" * width
    print(f"\n{Colors.TITLE}{rule}\n  {text}\n{rule}{Colors.RESET}")


def format_box(lines: list[str], title: str = "") -> str:
    """
    Frame ``lines`` in a box with an optional centred title.

    Example
    -------
    >>> print(format_box(["Frames: 120"], title="Done"))  # doctest: +SKIP
    """
    width = max([len(line) for line in lines] + [len(title)]) + 4
    out = ["┌" + "─" * width + "┐"]
    if title:
        out.append(f"│{title:^{width}}│")
        out.append("├" + "─" * width + "┤")
    out.extend(f"│  {line:<{width - 2}}│" for line in lines)
    out.append("└" + "─" * width + "┘")
    return "\n".join(out)


def print_summary_box(lines: list[str], title: str = "Summary") -> None:
    print(f"\n{Colors.GOOD}{format_box(lines, title)}{Colors.RESET}")


def print_banner(version: str) -> None:
    """Print the startup banner."""
    print(
        f"{Colors.TITLE}"
        + format_box(
            ["Lucky imaging for planetary, lunar and solar video", f"Version {version}"],
            title=f"{Symbols.MOON}  luckystack",
        )
        + Colors.RESET
    )


def print_quality_summary(analysis: AnalysisResult, best: int = 5) -> None:
    """Frame accounting, score statistics and the best frames of an analysis."""
    stats = analysis.stats
    print_metric("Frames in source", analysis.total_frames)
    print_metric("Frames analysed", f"{len(analysis.scores)} (every {analysis.sample_step})")
    if analysis.decode_failures:
        print_metric("Decode failures", analysis.decode_failures)
    print_metric("Score min/median/max", f"{stats.min:.3f} / {stats.median:.3f} / {stats.max:.3f}")
    top = ", ".join(f"#{s.frame_index} ({s.raw_sharpness:.3g})" for s in analysis.top_n(best))
    print_info(f"Sharpest frames: {top}")


def format_rejections(rejected: list[RejectedFrame]) -> str:
    """
    One-line breakdown of rejections by reason.

    Example
    -------
    >>> from luckystack.config import RejectionReason
    >>> format_rejections([RejectedFrame(3, RejectionReason.ALIGNMENT_FAILED)])
    'alignment_failed: 1'
    """
    counts = Counter(r.reason.value for r in rejected)
    return ", ".join(f"{reason}: {n}" for reason, n in sorted(counts.items())) or "none"


@dataclass
class ProgressConfig:
    """tqdm bar appearance."""

    bar_format: str = "{desc:<28}{bar}| {n_fmt:>3}% [{elapsed}<{remaining}]"
    ncols: int = 88
    colour: str = "green"
    leave: bool = True


def create_progress_bar(
    desc: str = "Starting",
    config: ProgressConfig | None = None,
    disable: bool = False,
) -> tqdm:
    """
    Percentage bar (0-100) for pipeline progress.

    Parameters
    ----------
    desc : str, default "Starting"
        Initial description.
    config : ProgressConfig, optional
        Bar appearance.
    disable : bool, default False
        Create a silent bar.
    """
    if config is None:
        config = ProgressConfig()

    return tqdm(
        total=100,
        desc=desc,
        unit="%",
        bar_format=config.bar_format,
        ncols=config.ncols,
        colour=config.colour,
        leave=config.leave,
        disable=disable,
    )


class TqdmProgressSink:
    """
    Progress sink that drives a single 0-100 tqdm bar.

    Example
    -------
    >>> with TqdmProgressSink() as sink:
    ...     result = process_video(source, params, progress=sink)
    """

    def __init__(self, disable: bool = False):
        self.bar = create_progress_bar(disable=disable)
        self._stage = ""

    def notify(self, percent: int, message: str) -> None:
        # Stage name without the "(done/total)" counter
        stage = message.split(" (", 1)[0]
        if stage != self._stage:
            self._stage = stage
            self.bar.set_description_str(f"{Colors.BAR}{stage}{Colors.RESET}")
        if percent > self.bar.n:
            self.bar.update(percent - self.bar.n)

    def close(self) -> None:
        self.bar.close()

    def __enter__(self) -> TqdmProgressSink:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def detect_terminal_capabilities() -> dict:
    """
    Whether stdout can show colour and unicode.

    Colour is off for non-TTY output, when NO_COLOR is set, or on a dumb
    terminal. Unicode is off unless stdout's encoding is UTF.
    """
    interactive = sys.stdout.isatty()
    color = interactive and not os.environ.get("NO_COLOR") and os.environ.get("TERM") != "dumb"
    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    return {"color": bool(color), "unicode": "utf" in encoding}


def setup_terminal() -> dict:
    """Apply ``detect_terminal_capabilities`` to the palettes."""
    caps = detect_terminal_capabilities()
    if not caps["unicode"]:
        Symbols.use_ascii()
    if not caps["color"]:
        Colors.disable()
    return caps
