"""Builder for remote shell batches.

Values that end up in a batch go through `require_safe` (build-time check) and
`shlex.quote` (render-time quoting). Raw fragments are reserved for constant
shell syntax such as `if`/`fi`.
"""

from __future__ import annotations

import re
import shlex

# Characters allowed in interpolated values: no whitespace, quotes, `$`, `;`, `|`, `&`, `<`, `>`, backticks.
SAFE_VALUE_PATTERN = re.compile(r"^[A-Za-z0-9._/@:+=,%~-]+$")

LOG_FUNCTION = (
    'log() { printf \'%s - %s\\n\' "$(date \'+%Y-%m-%d %H:%M:%S\')" "$1" >> "$DEPLOY_LOG"; '
    'printf \'%s\\n\' "$1"; }'
)


class UnsafeValueError(ValueError):
    pass


def require_safe(value: str, *, what: str) -> str:
    text = str(value)
    if not text or not SAFE_VALUE_PATTERN.match(text):
        raise UnsafeValueError(f"{what} contains characters that are not allowed in remote commands: {text!r}")
    return text


def command(*argv: str) -> str:
    return " ".join(shlex.quote(str(a)) for a in argv)


class RemoteScript:
    """An ordered batch of shell statements executed as one unit."""

    def __init__(self, *, remote_log_path: str, name: str = "batch"):
        self.name = name
        self.remote_log_path = require_safe(remote_log_path, what="remote log path")
        self._lines: list[str] = []

    def raw(self, fragment: str) -> RemoteScript:
        self._lines.append(fragment)
        return self

    def run(self, *argv: str, tolerate_failure: bool = False, redirect: str = "") -> RemoteScript:
        line = command(*argv)
        if redirect:
            line = f"{line} {redirect}"
        if tolerate_failure:
            line = f"{line} || true"
        self._lines.append(line)
        return self

    def log(self, message: str) -> RemoteScript:
        self._lines.append(f"log {shlex.quote(message)}")
        return self

    def write_file(self, path: str, content: str, *, delimiter: str = "HOSTDEPLOY_EOF") -> RemoteScript:
        """Write `content` verbatim; the quoted heredoc delimiter disables expansion."""
        require_safe(path, what="remote file path")
        if any(line.strip() == delimiter for line in content.splitlines()):
            raise UnsafeValueError(f"file content for {path} contains the heredoc delimiter {delimiter}")
        body = content if content.endswith("\n") else content + "\n"
        self._lines.append(f"cat > {shlex.quote(path)} <<'{delimiter}'\n{body}{delimiter}")
        return self

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def render(self) -> str:
        header = [
            "set -e",
            f"DEPLOY_LOG={shlex.quote(self.remote_log_path)}",
            LOG_FUNCTION,
        ]
        return "\n".join(header + self._lines) + "\n"
