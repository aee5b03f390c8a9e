"""
Scope checks for provider responses. Granted scopes must equal the required set exactly.
"""


def parse_scopes(value: str | list | None) -> list[str]:
    """Normalize a scope claim (JSON list or space-separated string) to a list, keeping duplicates."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(s) for s in value]
    return str(value).split()


def scopes_match(required: list[str], granted: list[str]) -> bool:
    """
    Exact multiset comparison. Each granted scope must remove exactly one entry from a
    working copy of required; anything left over, extra or duplicated is a mismatch.
    """
    remaining = list(required)
    for scope in granted:
        count = remaining.count(scope)
        # zero means an extra scope, more than one means required itself has duplicates
        if count != 1:
            return False
        remaining.remove(scope)
    return not remaining
