"""Names for the input and output slots of a function."""

from __future__ import annotations

from collections.abc import Sequence

from fxad.errors import OutOfRangeError


class IOScheme:
    """Ordered list of slot names with optional descriptions.

    Functions only address slots by integer index.
    A scheme resolves a name to that index before dispatch.
    """

    def __init__(
        self, entries: Sequence[str], descriptions: Sequence[str] | None = None
    ) -> None:
        self.entries = tuple(entries)
        self.descriptions = (
            tuple(descriptions) if descriptions else tuple("" for _ in self.entries)
        )
        if len(self.descriptions) != len(self.entries):
            msg = (
                f"Got {len(self.descriptions)} descriptions "
                f"for {len(self.entries)} entries"
            )
            raise ValueError(msg)

    @property
    def name(self) -> str:
        return "customIO"

    def entry_names(self) -> str:
        return ", ".join(self.entries)

    def entry(self, i: int) -> str:
        if not 0 <= i < len(self.entries):
            msg = (
                f"{self.name}.entry(): requesting entry for index {i}, "
                f"but scheme is only length {len(self.entries)}"
            )
            raise OutOfRangeError(msg)
        return self.entries[i]

    def describe(self, i: int) -> str:
        """Entry name, followed by its quoted description if there is one."""
        entry = self.entry(i)
        if not self.descriptions[i]:
            return entry
        return f"{entry} '{self.descriptions[i]}'"

    def index(self, name: str) -> int:
        try:
            return self.entries.index(name)
        except ValueError:
            msg = (
                f"{self.name}.index(): entry '{name}' not available. "
                f"Available entries are {self.entry_names()}"
            )
            raise OutOfRangeError(msg) from None

    def __len__(self) -> int:
        return len(self.entries)

    def __repr__(self) -> str:
        return f"{self.name}({self.entry_names()})"
