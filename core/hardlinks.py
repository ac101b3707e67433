from __future__ import annotations

import logging
import os
from typing import Dict, Optional, Tuple


class HardLinkFileService:
    """Counts hardlinks of downloaded files.

    Links living under an ignored root (usually the seeding directory) can
    be discounted by scanning that root once with ``populate_file_counts``.
    """

    def __init__(self) -> None:
        self._inode_counts: Dict[Tuple[int, int], int] = {}
        self._populated_root: Optional[str] = None

    def clear(self) -> None:
        self._inode_counts.clear()
        self._populated_root = None

    def populate_file_counts(self, root: str) -> None:
        self.clear()
        if not root or not os.path.isdir(root):
            logging.debug(f"hardlink ignore root not found: {root}")
            return
        for dirpath, _dirnames, filenames in os.walk(root):
            for fn in filenames:
                try:
                    st = os.stat(os.path.join(dirpath, fn))
                except OSError:
                    continue
                key = (st.st_dev, st.st_ino)
                self._inode_counts[key] = self._inode_counts.get(key, 0) + 1
        self._populated_root = root

    def get_hardlink_count(self, path: str, ignore_root_dir: bool = False) -> int:
        try:
            st = os.stat(path)
        except OSError as e:
            logging.debug(f"could not stat {path}: {e}")
            return -1
        links = st.st_nlink - 1
        if ignore_root_dir and self._populated_root:
            # the file itself is counted once when it lives under the root
            seen = self._inode_counts.get((st.st_dev, st.st_ino), 0)
            if seen and _is_under(path, self._populated_root):
                seen -= 1
            links -= seen
        return max(links, 0)


def _is_under(path: str, root: str) -> bool:
    try:
        return os.path.commonpath([os.path.abspath(path), os.path.abspath(root)]) == os.path.abspath(root)
    except ValueError:
        return False
