"""
A single-line query editor with inline completion. Keys are read one at a
time with click.getchar(), which puts the terminal in raw mode only for the
duration of each read. The editing logic lives in LineEditor.handle(), which
doesn't touch the terminal, and the screen is redrawn from render_line().
"""

from dataclasses import dataclass, field
from enum import Enum, StrEnum
import re
import shutil
import signal
import sys
import threading
from typing import Callable, Self, TextIO

import click
from termcolor import colored

from dbcli.autocomplete import AutocompleteProvider
from dbcli.errors import InputCancelled

MAX_VISIBLE_SUGGESTIONS = 6
HINT = "Tab: complete, ↑↓: navigate: "


class Key(StrEnum):
    """
    Editor input events.
    """

    CHAR = "char"
    ENTER = "enter"
    TAB = "tab"
    ESCAPE = "escape"
    BACKSPACE = "backspace"
    DELETE = "delete"
    LEFT = "left"
    RIGHT = "right"
    UP = "up"
    DOWN = "down"
    HOME = "home"
    END = "end"
    CTRL_D = "ctrl-d"
    INTERRUPT = "interrupt"


class Outcome(Enum):
    """
    What the reader should do after a key has been handled.
    """

    CONTINUE = 1
    SUBMIT = 2
    CANCEL = 3


ESCAPE_SEQUENCES: dict[str, Key] = {
    "\x1b[A": Key.UP,
    "\x1b[B": Key.DOWN,
    "\x1b[C": Key.RIGHT,
    "\x1b[D": Key.LEFT,
    "\x1bOA": Key.UP,
    "\x1bOB": Key.DOWN,
    "\x1bOC": Key.RIGHT,
    "\x1bOD": Key.LEFT,
    "\x1b[H": Key.HOME,
    "\x1b[F": Key.END,
    "\x1bOH": Key.HOME,
    "\x1bOF": Key.END,
    "\x1b[1~": Key.HOME,
    "\x1b[4~": Key.END,
    "\x1b[7~": Key.HOME,
    "\x1b[8~": Key.END,
    "\x1b[3~": Key.DELETE,
}

CONTROL_KEYS: dict[str, Key] = {
    "\r": Key.ENTER,
    "\n": Key.ENTER,
    "\t": Key.TAB,
    "\x7f": Key.BACKSPACE,
    "\x08": Key.BACKSPACE,
    "\x01": Key.HOME,
    "\x05": Key.END,
    "\x04": Key.CTRL_D,
    "\x03": Key.INTERRUPT,
}

# An escape sequence: ESC, then "[" or "O", parameters, and a final letter or
# "~".
ESCAPE_RE = re.compile(r"\x1b[\[O][0-9;]*[A-Za-z~]")


def decode_key(data: str) -> list[tuple[Key, str]]:
    """
    Split raw terminal input into key events. A single read can hold more
    than one key (pasted text, or keys typed faster than they are read), so
    a list is returned. Unknown escape sequences and control characters are
    dropped.

    :param data: the characters returned by one read
    """
    events: list[tuple[Key, str]] = []
    i = 0
    while i < len(data):
        c = data[i]
        if c == "\x1b":
            if (m := ESCAPE_RE.match(data, i)) is not None:
                if (key := ESCAPE_SEQUENCES.get(m.group())) is not None:
                    events.append((key, ""))
                i = m.end()
            else:
                events.append((Key.ESCAPE, ""))
                i += 1
            continue

        if (key := CONTROL_KEYS.get(c)) is not None:
            events.append((key, ""))
        elif c.isprintable():
            events.append((Key.CHAR, c))
        i += 1

    return events


@dataclass
class EditorState:
    """
    The state of one input request.

    `selected` is -1 when no suggestion is highlighted. `recall_index` is
    the position in the recall list of the query being shown, or -1 while
    the user is editing their own text (kept in `draft` during recall).
    """

    buffer: str = ""
    cursor: int = 0
    suggestions: list[str] = field(default_factory=list)
    selected: int = -1
    overlay_open: bool = False
    recall_index: int = -1
    draft: str = ""


class LineEditor:
    """
    The editor. One instance can serve any number of input requests; each
    call to read_line() starts from an empty buffer.
    """

    def __init__(
        self: Self,
        provider: AutocompleteProvider | None = None,
        recall: list[str] | None = None,
        out: TextIO | None = None,
        getchar: Callable[[], str] | None = None,
    ) -> None:
        """
        :param provider: the source of suggestions; none are shown without
            one
        :param recall: earlier queries, most recent first, for Up/Down
        :param out: where to draw; defaults to standard output
        :param getchar: reads the next chunk of raw input; defaults to
            click.getchar()
        """
        self.provider = provider
        self.recall: list[str] = list(recall or [])
        self.out = out or sys.stdout
        self._getchar = getchar or click.getchar
        self.state = EditorState()

    def reset(self: Self) -> None:
        """
        Start a new input request.
        """
        self.state = EditorState()
        self.update_suggestions()

    # -- editing -------------------------------------------------------------

    def update_suggestions(self: Self) -> None:
        """
        Recompute the suggestions for the buffer, and highlight the first.
        """
        st = self.state
        if self.provider is None:
            st.suggestions = []
        elif (text := st.buffer.strip()) == "":
            st.suggestions = self.provider.get_quick_suggestions()
        else:
            st.suggestions = self.provider.get_suggestions(text)

        if len(st.suggestions) > 0:
            st.selected = 0
            st.overlay_open = True
        else:
            st.selected = -1
            st.overlay_open = False

    def close_overlay(self: Self) -> None:
        self.state.overlay_open = False
        self.state.selected = -1

    def insert(self: Self, text: str) -> None:
        st = self.state
        text = "".join(c for c in text if c.isprintable())
        if text == "":
            return
        st.buffer = st.buffer[: st.cursor] + text + st.buffer[st.cursor :]
        st.cursor += len(text)
        st.recall_index = -1
        self.update_suggestions()

    def backspace(self: Self) -> None:
        st = self.state
        if st.cursor > 0:
            st.buffer = st.buffer[: st.cursor - 1] + st.buffer[st.cursor :]
            st.cursor -= 1
            self.update_suggestions()

    def delete(self: Self) -> None:
        st = self.state
        if st.cursor < len(st.buffer):
            st.buffer = st.buffer[: st.cursor] + st.buffer[st.cursor + 1 :]
            self.update_suggestions()

    def accept_suggestion(self: Self) -> None:
        """
        Put the selected suggestion into the buffer. If the word before the
        cursor is the start of the suggestion, the suggestion replaces it;
        otherwise the suggestion is inserted at the cursor.
        """
        st = self.state
        if st.selected < 0 or st.selected >= len(st.suggestions):
            return

        suggestion = st.suggestions[st.selected]
        before = st.buffer[: st.cursor]
        after = st.buffer[st.cursor :]
        partial = re.search(r"\S*$", before).group()  # type: ignore[union-attr]

        if partial and suggestion.lower().startswith(partial.lower()):
            start = len(before) - len(partial)
            st.buffer = before[:start] + suggestion + after
            st.cursor = start + len(suggestion)
        else:
            st.buffer = before + suggestion + after
            st.cursor = len(before) + len(suggestion)

        if st.cursor == len(st.buffer) and not st.buffer[-1:].isspace():
            st.buffer += " "
            st.cursor += 1

        self.close_overlay()
        self.update_suggestions()

    def move_selection(self: Self, step: int) -> None:
        st = self.state
        n = len(st.suggestions)
        if step < 0:
            st.selected = n - 1 if st.selected <= 0 else st.selected - 1
        else:
            st.selected = 0 if st.selected >= n - 1 else st.selected + 1

    def recall_step(self: Self, step: int) -> None:
        """
        Walk through the recall list: +1 goes to an older query, -1 to a
        newer one. Stepping past the newest query brings back the draft.
        """
        st = self.state
        if len(self.recall) == 0:
            return

        if st.recall_index == -1:
            if step < 0:
                return
            st.draft = st.buffer

        index = min(st.recall_index + step, len(self.recall) - 1)
        st.recall_index = index
        st.buffer = st.draft if index < 0 else self.recall[index]
        st.cursor = len(st.buffer)
        st.suggestions = []
        self.close_overlay()

    def handle(self: Self, key: Key, text: str = "") -> Outcome:
        """
        Apply one key event to the editor state.

        :param key: the event
        :param text: the typed characters, for Key.CHAR
        """
        # pylint: disable=too-many-branches
        st = self.state
        match key:
            case Key.CHAR:
                self.insert(text)
            case Key.BACKSPACE:
                self.backspace()
            case Key.DELETE:
                self.delete()
            case Key.CTRL_D:
                if st.buffer == "":
                    return Outcome.CANCEL
                self.delete()
            case Key.LEFT:
                st.cursor = max(st.cursor - 1, 0)
            case Key.RIGHT:
                st.cursor = min(st.cursor + 1, len(st.buffer))
            case Key.HOME:
                st.cursor = 0
            case Key.END:
                st.cursor = len(st.buffer)
            case Key.UP | Key.DOWN:
                if st.overlay_open and len(st.suggestions) > 0:
                    self.move_selection(-1 if key == Key.UP else 1)
                else:
                    self.recall_step(1 if key == Key.UP else -1)
            case Key.TAB:
                if len(st.suggestions) > 0:
                    if st.selected < 0:
                        st.selected = 0
                    self.accept_suggestion()
            case Key.ENTER:
                if st.selected >= 0 and len(st.suggestions) > 0:
                    self.accept_suggestion()
                else:
                    return Outcome.SUBMIT
            case Key.ESCAPE:
                self.close_overlay()
            case Key.INTERRUPT:
                return Outcome.CANCEL

        return Outcome.CONTINUE

    # -- terminal ------------------------------------------------------------

    def read_line(self: Self, prompt: str) -> str:
        """
        Read one query from the terminal.

        :param prompt: the prompt, without colour
        :returns: the trimmed buffer
        :raises: InputCancelled on Ctrl-C, Ctrl-D on an empty line, or
            SIGTERM
        """
        self.reset()
        previous_handler = None
        in_main_thread = threading.current_thread() is threading.main_thread()

        def on_terminate(signum, frame):
            # pylint: disable=unused-argument
            raise InputCancelled("Terminated")

        if in_main_thread:
            previous_handler = signal.signal(signal.SIGTERM, on_terminate)

        try:
            self.draw(prompt)
            while True:
                try:
                    events = decode_key(self._getchar())
                except KeyboardInterrupt:
                    raise InputCancelled("User cancelled") from None
                except EOFError:
                    events = [(Key.CTRL_D, "")]

                for key, text in events:
                    match self.handle(key, text):
                        case Outcome.SUBMIT:
                            return self.state.buffer.strip()
                        case Outcome.CANCEL:
                            raise InputCancelled("User cancelled")

                self.draw(prompt)
        finally:
            if in_main_thread:
                signal.signal(signal.SIGTERM, previous_handler or signal.SIG_DFL)
            # Leave the input line and wipe the suggestion strip.
            self.out.write("\n\x1b[K")
            self.out.flush()

    def draw(self: Self, prompt: str) -> None:
        width = shutil.get_terminal_size().columns
        self.out.write(render_line(prompt, self.state, width))
        self.out.flush()


def render_suggestions(state: EditorState, width: int) -> str:
    """
    The suggestion strip: at most MAX_VISIBLE_SUGGESTIONS entries and a
    count of the rest, cut off at the terminal width.
    """
    if not state.overlay_open or len(state.suggestions) == 0:
        return ""

    shown = state.suggestions[:MAX_VISIBLE_SUGGESTIONS]
    pieces: list[tuple[str, bool]] = []
    if state.selected == 0:
        pieces.append((HINT, False))
    for i, suggestion in enumerate(shown):
        gap = " " if i < len(shown) - 1 else ""
        pieces.append((f" {suggestion} {gap}", i == state.selected))
    if (more := len(state.suggestions) - len(shown)) > 0:
        pieces.append((f" ... +{more} more", False))

    strip = ""
    room = max(width - 1, 0)
    for text, selected in pieces:
        if len(text) > room:
            text = text[:room]
        room -= len(text)
        if selected:
            strip += colored(text, "black", "on_cyan")
        else:
            strip += colored(text, attrs=["dark"])
        if room == 0:
            break

    return strip


def render_line(prompt: str, state: EditorState, width: int) -> str:
    """
    The escape sequence that redraws the input line and the suggestion
    strip below it, leaving the cursor at its place in the buffer. Depends
    only on its arguments.

    :param prompt: the prompt, without colour
    :param state: the editor state
    :param width: the terminal width
    """
    column = len(prompt) + state.cursor + 1
    return (
        "\r\x1b[K"
        + colored(prompt, "cyan", attrs=["bold"])
        + state.buffer
        + "\n\r\x1b[K"
        + render_suggestions(state, width)
        + "\x1b[1A"
        + f"\x1b[{column}G"
    )
