"""
PLAY RECAP parsing.

The wrapped tool ends its output with a recap block:

    PLAY RECAP *********************************************************
    node1                      : ok=3    changed=1    unreachable=0    failed=0
    node2                      : ok=2    changed=0    unreachable=0    failed=1

    <blank line>

Counters are kept as the exact strings found in the text. A counter that
is absent from a line is "" (unknown), which is not the same as "0".
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from cluster_runner.errors import RecapNotFoundError, RecapParseError

DEFAULT_BANNER = "PLAY RECAP"

COUNTERS = ("ok", "changed", "unreachable", "failed", "skipped", "rescued", "ignored")


@dataclass(frozen=True)
class NodeStatus:
    """Recap counters for one node, verbatim from the tool output."""

    node_name: str
    ok: str = ""
    changed: str = ""
    unreachable: str = ""
    failed: str = ""
    skipped: str = ""
    rescued: str = ""
    ignored: str = ""

    @property
    def succeeded(self) -> bool:
        return self.unreachable == "0" and self.failed == "0"

    def to_dict(self) -> Dict[str, str]:
        return {"node_name": self.node_name, **{k: getattr(self, k) for k in COUNTERS}}


@dataclass(frozen=True)
class RecapResult:
    """Parsed recap block."""

    success: bool
    node_status: Tuple[NodeStatus, ...] = field(default_factory=tuple)

    def failed_nodes(self) -> List[str]:
        return [n.node_name for n in self.node_status if not n.succeeded]


def _banner_pattern(banner: str) -> "re.Pattern":
    # The banner line is the literal followed by a run of asterisks whose
    # width depends on the terminal, so only the literal is matched.
    return re.compile(rf"^{re.escape(banner)}[^\n]*(?:\n|$)", re.MULTILINE)


def extract_recap_block(output: str, banner: str = DEFAULT_BANNER) -> str:
    """
    Return the text between the last recap banner and the next blank line.

    Raises:
        RecapNotFoundError: No banner in output
    """
    matches = list(_banner_pattern(banner).finditer(output))
    if not matches:
        raise RecapNotFoundError(f"no '{banner}' section found in command output")

    block = output[matches[-1].end():].replace("\r\n", "\n")
    end = block.find("\n\n")
    if end != -1:
        block = block[:end]
    return block


def parse_recap_line(line: str) -> NodeStatus:
    """
    Parse one ``node : key=value key=value`` recap line.

    Only the first colon separates the node name; unknown keys and tokens
    without '=' are ignored.

    Raises:
        RecapParseError: Line has no colon
    """
    name, sep, tail = line.partition(":")
    if not sep:
        raise RecapParseError(f"malformed recap line: {line!r}")

    values = {}
    for token in tail.split():
        key, eq, value = token.partition("=")
        if not eq:
            continue
        values[key.strip()] = value.strip()

    return NodeStatus(
        node_name=name.strip(),
        **{k: values.get(k, "") for k in COUNTERS},
    )


def parse_recap(output: str, banner: str = DEFAULT_BANNER) -> RecapResult:
    """
    Parse tool output into per-node status and an aggregate verdict.

    Success requires at least one node and every node reporting
    unreachable=0 and failed=0 literally.

    Raises:
        RecapNotFoundError: The tool never printed a recap
        RecapParseError: A recap line is malformed
    """
    block = extract_recap_block(output, banner)
    status = tuple(
        parse_recap_line(line) for line in block.split("\n") if line.strip()
    )
    success = bool(status) and all(n.succeeded for n in status)
    return RecapResult(success=success, node_status=status)
