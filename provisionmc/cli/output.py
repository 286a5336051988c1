"""Outputs of the CLI. The human output prints one status line per provisioning step,
updated in place while the step runs, the machine output prints one JSON document per
line so that launchers wrapping the provisioner can follow its progress.
"""

from .lang import get_raw as _raw

import shutil
import json
import sys

from typing import List, Optional, Tuple


_SIZE_UNITS = ((1000000000, "G"), (1000000, "M"), (1000, "k"))


def format_number(n: float) -> str:
    """Return a number truncated to one decimal with suffix k, M, G or nothing.
    """
    for factor, unit in _SIZE_UNITS:
        if n >= factor:
            return f"{int(n * 10 / factor) / 10:.1f} {unit}"
    return str(int(n))


class Output:
    """Abstract output of the CLI, status lines report the state of a provisioning step
    and tables report collections such as the server list.
    """

    def task(self, state: Optional[str], key: Optional[str], **kwargs) -> None:
        """Update the status line of the current step, or start a new one. A none key
        only updates the state of the line.
        """
        raise NotImplementedError

    def finish(self) -> None:
        """Terminate the current status line, if any.
        """
        raise NotImplementedError

    def table(self) -> "ReportTable":
        return ReportTable(self)

    def print_table(self, table: "ReportTable") -> None:
        raise NotImplementedError


class ReportTable:
    """Rows of a report, a none row separates the header from the entries.
    """

    def __init__(self, out: Output) -> None:
        self.out = out
        self.rows: List[Optional[Tuple[str, ...]]] = []

    def add(self, *cells) -> None:
        self.rows.append(tuple(str(cell) for cell in cells))

    def separator(self) -> None:
        self.rows.append(None)

    def widths(self) -> List[int]:
        widths: List[int] = []
        for row in self.rows:
            if row is None:
                continue
            for i, cell in enumerate(row):
                if i < len(widths):
                    widths[i] = max(widths[i], len(cell))
                else:
                    widths.append(len(cell))
        return widths

    def print(self) -> None:
        self.out.print_table(self)


class HumanOutput(Output):

    state_width = 6
    state_colors = {
        "OK": "\033[92m",
        "FAILED": "\033[31m",
        "WARN": "\033[33m",
        "HALT": "\033[33m",
        "INFO": "\033[36m",
    }

    def __init__(self, color: bool) -> None:
        self.color = color
        self.line_len: Optional[int] = None

    def _state_header(self, state: Optional[str]) -> str:
        if state is None:
            return " " * (self.state_width + 3)
        label = f"{state:^{self.state_width}s}"
        color = self.state_colors.get(state) if self.color else None
        if color is not None:
            label = f"{color}{label}\033[0m"
        return f"[{label}] "

    def task(self, state: Optional[str], key: Optional[str], **kwargs) -> None:

        header = self._state_header(state)

        if key is None:
            sys.stdout.write(f"\r{header}")
            self.line_len = self.line_len or 0
            sys.stdout.flush()
            return

        room = shutil.get_terminal_size().columns - self.state_width - 4
        message = _raw(key, kwargs)
        if len(message) > room:
            message = f"{message[:max(room - 3, 0)]}..."

        # Blank the remaining of a longer previous message.
        padding = " " * max((self.line_len or 0) - len(message), 0)
        sys.stdout.write(f"\r{header}{message}{padding}")
        sys.stdout.flush()
        self.line_len = len(message)

    def finish(self) -> None:
        if self.line_len is not None:
            sys.stdout.write("\n")
            sys.stdout.flush()
            self.line_len = None

    def print_table(self, table: ReportTable) -> None:

        self.finish()
        widths = table.widths()
        max_len = shutil.get_terminal_size().columns

        for row in table.rows:
            if row is None:
                line = "  ".join("-" * width for width in widths)
            else:
                line = "  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip()
            print(line[:max_len])


class MachineOutput(Output):

    def emit(self, kind: str, **fields) -> None:
        print(json.dumps({"type": kind, **fields}, default=str), flush=True)

    def task(self, state: Optional[str], key: Optional[str], **kwargs) -> None:
        self.emit("task", state=state, key=key, args=kwargs)

    def finish(self) -> None:
        pass

    def print_table(self, table: ReportTable) -> None:
        self.emit("table", rows=[None if row is None else list(row) for row in table.rows])
