import os
from pathlib import Path

PROJECT_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def _parse_line(raw: str) -> tuple[str, str] | None:
    line = raw.strip()
    if line.startswith("export "):
        line = line[len("export "):].lstrip()
    if not line or line.startswith("#"):
        return None
    name, sep, value = line.partition("=")
    name = name.strip()
    if not sep or not name:
        return None

    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return name, value[1:-1]
    # unquoted values may carry a trailing "  # note"
    return name, value.split(" #", 1)[0].rstrip()


def load_project_env(path: str | Path | None = None, override: bool = False) -> list[str]:
    """Copy ``KEY=value`` pairs from a dotenv file into ``os.environ``.

    Defaults to ``POLYCHAT_ENV_FILE`` or the ``.env`` next to the package.
    Variables already present in the environment win unless ``override``.
    Returns the names that were set.
    """
    env_file = Path(path or os.getenv("POLYCHAT_ENV_FILE") or PROJECT_ENV_FILE)
    if not env_file.is_file():
        return []

    applied: list[str] = []
    for raw in env_file.read_text(encoding="utf-8-sig").splitlines():
        pair = _parse_line(raw)
        if pair is None:
            continue
        name, value = pair
        if override or name not in os.environ:
            os.environ[name] = value
            applied.append(name)
    return applied
