"""Launch command construction.

The generated command line is handed to the execution layer as a single shell
string, so every token goes through `shell_escape` and stays one shell word.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from clusterdispatch.config.settings import LaunchConfig
from clusterdispatch.models import DriverDescription

_HARMLESS = re.compile(r"[A-Za-z0-9.\-]*")
_ESCAPED_IN_DOUBLE_QUOTES = re.compile(r'(["$`])')


def shell_escape(value: str) -> str:
    """Return `value` as a single shell word.

    Strings the caller already quoted and strings made only of letters,
    digits, '-' and '.' are returned as is. Anything else is wrapped in double
    quotes with '"', '$' and '`' backslash-escaped; the quotes neutralize the
    remaining special characters.

    Caveat: backslashes are not escaped. A raw backslash before '$', '`' or
    '"' (e.g. `x\\$(id)`) pairs with the added escape and re-enables
    expansion, and a trailing backslash escapes the closing quote. Values
    that may carry backslashes must be rejected or pre-quoted by the caller.
    """
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value
    if _HARMLESS.fullmatch(value):
        return value
    return '"' + _ESCAPED_IN_DOUBLE_QUOTES.sub(r"\\\1", value) + '"'


@dataclass(frozen=True)
class LaunchCommand:
    submission_id: str
    shell_command: str
    environment: dict[str, str] = field(default_factory=dict)

    def to_document(self) -> dict:
        return {
            "submission_id": self.submission_id,
            "shell_command": self.shell_command,
            "environment": dict(self.environment),
        }


def build_launch_command(submission_id: str, description: DriverDescription, launch: LaunchConfig) -> LaunchCommand:
    command = description.command
    tokens: list[str] = [
        launch.executable,
        "--name",
        description.name,
        "--master",
        launch.master,
        "--deploy-mode",
        "client",
        "--driver-cores",
        str(description.cores),
        "--driver-memory",
        f"{description.mem_mb}M",
        "--class",
        command.main_class,
    ]
    if command.class_path_entries:
        tokens += ["--driver-class-path", ":".join(command.class_path_entries)]
    if command.library_path_entries:
        tokens += ["--driver-library-path", ":".join(command.library_path_entries)]
    if command.java_opts:
        tokens += ["--driver-java-options", " ".join(command.java_opts)]
    for key in sorted(description.properties):
        tokens += ["--conf", f"{key}={description.properties[key]}"]
    if description.jar_url:
        tokens.append(description.jar_url)
    tokens.extend(command.arguments)

    return LaunchCommand(
        submission_id=submission_id,
        shell_command=" ".join(shell_escape(t) for t in tokens),
        environment=dict(command.environment),
    )
