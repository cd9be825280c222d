"""
Scoped line rewrites for the node's TOML-ish config files.

Only lines matched by a rule change; every other byte of the file (line
endings, comments, ordering) is written back untouched, and the file mode is
kept. Rules are written so that applying them a second time changes nothing.
"""

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

from story_node.errors import ConfigPatchError

logger = logging.getLogger(__name__)

SECTION_RE = re.compile(r"^\s*\[([^\]]*)\]")


@dataclass(frozen=True)
class KeyRule:
    """Set `key = value` (value is written verbatim, quote strings yourself)"""

    key: str
    value: str
    section: Optional[str] = None

    def apply(self, body: str) -> str:
        if re.match(rf"^\s*{re.escape(self.key)}\s*=", body):
            return f"{self.key} = {self.value}"
        return body


@dataclass(frozen=True)
class Substitution:
    """In-line replacement of a literal (or a regex when regex=True)"""

    pattern: str
    replacement: str
    regex: bool = False
    section: Optional[str] = None

    def apply(self, body: str) -> str:
        if self.regex:
            return re.sub(self.pattern, lambda _m: self.replacement, body)
        return body.replace(self.pattern, self.replacement)


Rule = Union[KeyRule, Substitution]


def quoted(value: str) -> str:
    return f'"{value}"'


def port_shift(base_port: int, prefix: str) -> Substitution:
    """`:26656` -> `:{prefix}656`, on every line of the file"""
    base = str(base_port)
    return Substitution(f":{base}", f":{prefix}{base[-3:]}")


def _split_eol(line: str):
    body = line.rstrip("\r\n")
    return body, line[len(body):]


def patch_text(text: str, rules: Sequence[Rule]) -> str:
    out: List[str] = []
    section = None
    for line in text.splitlines(keepends=True):
        body, eol = _split_eol(line)
        header = SECTION_RE.match(body)
        if header:
            section = header.group(1).strip()
        for rule in rules:
            # a rule scoped to [p2p] covers the header line up to the next `[` line
            if rule.section is not None and rule.section != section:
                continue
            body = rule.apply(body)
        out.append(body + eol)
    return "".join(out)


def apply_rules(path: Union[str, Path], rules: Iterable[Rule], backup_suffix: Optional[str] = None) -> bool:
    """
    Rewrite `path` in place with `rules`. Returns True when the content changed.
    Missing keys are skipped; a missing or unwritable file raises ConfigPatchError.
    """
    path = Path(path)
    rules = list(rules)
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            original = f.read()
    except OSError as e:
        raise ConfigPatchError(f"cannot read {path}: {e.strerror or e}")
    if not os.access(path, os.W_OK):
        raise ConfigPatchError(f"cannot write {path}: file is read-only")

    patched = patch_text(original, rules)
    if patched == original:
        logger.debug("%s already up to date", path)
        return False

    try:
        if backup_suffix:
            shutil.copy2(path, f"{path}{backup_suffix}")
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(patched)
            shutil.copymode(path, tmp)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise ConfigPatchError(f"cannot write {path}: {e.strerror or e}")

    logger.debug("patched %s", path)
    return True


def read_value(path: Union[str, Path], key: str, section: Optional[str] = None) -> Optional[str]:
    """First value of `key` (inside `[section]` if given), quotes stripped"""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigPatchError(f"cannot read {path}: {e.strerror or e}")
    current = None
    for line in text.splitlines():
        header = SECTION_RE.match(line)
        if header:
            current = header.group(1).strip()
            continue
        if section is not None and current != section:
            continue
        m = re.match(rf"^\s*{re.escape(key)}\s*=\s*(.*?)\s*$", line)
        if m:
            return m.group(1).strip('"').strip("'")
    return None
