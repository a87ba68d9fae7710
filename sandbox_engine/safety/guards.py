"""
Safety Gate for the sandbox engine

A fast, synchronous deny-list check that runs before any workspace or
container is created. It catches the known-destructive commands below:
- Recursive deletion of the filesystem root or the home directory
- Shutdown, reboot, halt and poweroff
- Filesystem formatting and raw writes to block devices
- Fork bombs and world-writable permission sweeps over /

The container is the security boundary. This gate only stops the obvious
cases early, and `SafetyPolicy.extra_patterns` is the hook for anything
deeper.
"""

import re
from dataclasses import dataclass, field

# Characters that may terminate a path argument in shell or in a quoted
# string embedded in Python/Node source.
_END = r"(?=\s|$|[;&|)'\"`,])"
# A quoted string starts a command only when it is handed to something that
# runs it: os.system/popen, subprocess, child_process, or a `-c` argument.
_CODE_EXEC = (
    r"\b(?:system|popen|run|call|check_call|check_output|getoutput|getstatusoutput"
    r"|exec|execSync|execFile|execFileSync|spawn|spawnSync)\(\s*\[?\s*['\"]"
    r"|['\"]-c['\"]\s*,\s*['\"]"
)
# Positions where a command word may start.
_CMD_START = r"(?:^|[;&|`(]|\$\(|\bsudo\s+|\bexec\s+|" + _CODE_EXEC + r")\s*"


DEFAULT_PATTERNS: list[tuple[str, str]] = [
    (
        "recursive delete of root or home",
        r"\brm(?=[^;&|\n]*\s-[a-zA-Z]*[rR]|[^;&|\n]*\s--recursive)[^;&|\n]*?\s"
        r"(?:/|/\*|~|~/|~/\*|\$HOME|\$HOME/|\$HOME/\*|\$\{HOME\}/?)" + _END,
    ),
    (
        "recursive delete of root from code",
        r"\brmtree\(\s*['\"](?:/|~|/\*)['\"]",
    ),
    (
        "recursive delete of root from code",
        r"\brm(?:Sync|dirSync|dir)?\(\s*['\"]/['\"]\s*,[^)]*recursive",
    ),
    (
        "system shutdown or reboot",
        _CMD_START + r"(?:shutdown|reboot|halt|poweroff)\b(?!\s*[=.:(])",
    ),
    (
        "system shutdown or reboot",
        _CMD_START + r"(?:init|telinit)\s+[06]\b",
    ),
    (
        "system shutdown or reboot",
        r"\bsystemctl\s+(?:poweroff|reboot|halt|kexec)\b",
    ),
    (
        "filesystem format",
        r"\bmkfs(?:\.\w+)?\b",
    ),
    (
        "raw write to block device",
        r"\bdd\b[^;&|\n]*\bof=/dev/(?:sd|hd|nvme|xvd|vd|mmcblk)",
    ),
    (
        "raw write to block device",
        r">\s*/dev/(?:sd|hd|nvme|xvd|vd|mmcblk)\w*",
    ),
    (
        "fork bomb",
        r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
    ),
    (
        "recursive chmod of root",
        r"\bchmod\s+-R\s+0?777\s+/" + _END,
    ),
]


@dataclass
class SafetyCheck:
    """Outcome of a safety gate check."""
    allowed: bool
    reason: str | None = None
    matched_pattern: str | None = None


@dataclass
class SafetyPolicy:
    """Configurable deny-list."""
    patterns: list[tuple[str, str]] = field(default_factory=lambda: list(DEFAULT_PATTERNS))

    # Additional regexes, reported as "custom deny pattern"
    extra_patterns: list[str] = field(default_factory=list)


class SafetyGate:
    """
    Deny-list gate applied to command and script text.

    Patterns are compiled once; `check` is pure and holds no state, so a
    single gate can be shared by every concurrent execution.
    """

    def __init__(self, policy: SafetyPolicy | None = None):
        self.policy = policy or SafetyPolicy()
        self._compiled: list[tuple[str, re.Pattern[str]]] = [
            (name, re.compile(pattern, re.IGNORECASE | re.MULTILINE))
            for name, pattern in self.policy.patterns
        ]
        self._compiled.extend(
            ("custom deny pattern", re.compile(pattern, re.IGNORECASE | re.MULTILINE))
            for pattern in self.policy.extra_patterns
        )

    @property
    def pattern_count(self) -> int:
        return len(self._compiled)

    def check(self, text: str) -> SafetyCheck:
        """
        Check text against the deny-list.

        Returns a SafetyCheck with allowed=False and the reason for the
        first matching pattern, or allowed=True.
        """
        for name, pattern in self._compiled:
            match = pattern.search(text)
            if match:
                snippet = match.group(0).strip()
                return SafetyCheck(
                    allowed=False,
                    reason=f"Blocked dangerous operation ({name}): {snippet[:100]}",
                    matched_pattern=pattern.pattern,
                )
        return SafetyCheck(allowed=True)


def create_safety_gate(extra_patterns: list[str] | None = None) -> SafetyGate:
    """Create a safety gate with the default deny-list plus extra patterns."""
    policy = SafetyPolicy(extra_patterns=list(extra_patterns or []))
    return SafetyGate(policy)
