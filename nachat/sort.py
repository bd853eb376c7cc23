"""Sort keys for room names."""


def room_sort_key(name: str) -> str:
    """Case-folded name with leading ``#`` and ``@`` sigils removed."""
    stripped = name.lstrip("#@")
    return (stripped or name).casefold()