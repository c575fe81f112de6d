"""
Folder Enumeration Module
Lists the remote folder hierarchy and flattens it into selectable folder names
"""

import logging
import re
from typing import Any, Dict, List, NamedTuple, Optional

from .models import Folder
from ..utils.sanitization import sanitize_for_logging


logger = logging.getLogger(__name__)

DEFAULT_DELIMITER = "/"

LIST_LINE_PATTERN = re.compile(
    r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.+)$',
    re.IGNORECASE,
)


class ListEntry(NamedTuple):
    """One parsed line of a LIST response"""
    name: str
    delimiter: str
    flags: List[str]

    @property
    def selectable(self) -> bool:
        lowered = {flag.lower() for flag in self.flags}
        return "\\noselect" not in lowered and "\\nonexistent" not in lowered


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return re.sub(r'\\(.)', r'\1', value[1:-1])
    return value


def parse_list_response(lines: List[Any]) -> List[ListEntry]:
    """
    Parse imaplib LIST output

    Folder names sent as literals arrive as ``(b'(\\HasNoChildren) "/" {9}',
    b'Folder Me')`` tuples; everything else is a plain bytes line.
    """
    entries = []
    for line in lines:
        literal_name: Optional[str] = None
        if isinstance(line, tuple):
            head, literal = line[0], line[1]
            literal_name = literal.decode("utf-8", errors="replace")
            line = re.sub(rb"\{\d+\}$", b'""', head)
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")

        match = LIST_LINE_PATTERN.match(str(line).strip())
        if not match:
            logger.debug(f"Ignoring unparseable LIST line: {sanitize_for_logging(str(line))}")
            continue

        delimiter = match.group("delimiter")
        delimiter = "" if delimiter.upper() == "NIL" else _unquote(delimiter)
        name = literal_name if literal_name is not None else _unquote(match.group("name").strip())

        entries.append(ListEntry(
            name=name,
            delimiter=delimiter or DEFAULT_DELIMITER,
            flags=match.group("flags").split(),
        ))
    return entries


def build_folder_tree(entries: List[ListEntry]) -> List[Folder]:
    """
    Arrange flat LIST entries into a Folder hierarchy

    Parents the server never listed are created as non-selectable nodes.
    Siblings keep the order in which the server first mentioned them.
    """
    roots: List[Folder] = []
    index: Dict[str, Folder] = {}

    for entry in entries:
        segments = entry.name.split(entry.delimiter) if entry.delimiter else [entry.name]
        siblings = roots
        path = ""
        for depth, segment in enumerate(segments):
            path = f"{path}{entry.delimiter}{segment}" if depth else segment
            node = index.get(path)
            if node is None:
                node = Folder(name=path, delimiter=entry.delimiter, selectable=False)
                index[path] = node
                siblings.append(node)
            siblings = node.children

        index[entry.name].selectable = entry.selectable

    return roots


def flatten_folders(roots: List[Folder]) -> List[str]:
    """Depth-first, parent before children, selectable folders only"""
    names = []
    stack = list(reversed(roots))
    while stack:
        folder = stack.pop()
        if folder.selectable:
            names.append(folder.name)
        stack.extend(reversed(folder.children))
    return names


class FolderEnumerator:
    """Read-only view of an account's folder hierarchy"""

    def __init__(self, connection: Any, account_id: str):
        self.connection = connection
        self.logger = logging.getLogger(f"FolderEnumerator.{account_id}")

    async def list_tree(self) -> List[Folder]:
        lines = await self.connection.list_mailboxes()
        return build_folder_tree(parse_list_response(lines))

    async def list_folders(self) -> List[str]:
        """
        Fully-qualified names of every selectable folder

        Raises:
            FolderError: If the server refuses LIST
        """
        folders = flatten_folders(await self.list_tree())
        self.logger.info(f"Found {len(folders)} folders")
        return folders
