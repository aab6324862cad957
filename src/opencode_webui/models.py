"""Model list from ``opencode models``."""


def parse_models(output: str) -> list[str]:
    """Collect ``provider/model`` ids, one per line, ignoring JSON noise."""
    models = set()
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith(("{", "[")):
            continue
        token = line.split()[0]
        if "/" in token:
            models.add(token)
    return sorted(models)
