"""Formatting of the program's version."""


def version_string(tag: str, commits_since_tag: int, dirty: bool) -> str:
    """Describe a build by tag, commits past the tag and working-tree state."""
    result = tag
    if commits_since_tag != 0:
        result += f"-{commits_since_tag}"
    if dirty:
        result += "-dirty"
    return result