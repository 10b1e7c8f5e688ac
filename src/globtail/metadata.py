from __future__ import annotations
from typing import BinaryIO, NamedTuple, Optional, Tuple
import os
import stat


class FileIdentity(NamedTuple):
    device: int
    inode: int

    @classmethod
    def from_stat(cls, st: os.stat_result) -> "FileIdentity":
        return cls(int(st.st_dev), int(st.st_ino))


class FileMetadataSnapshot(NamedTuple):
    identity: FileIdentity
    size: int
    is_symlink: bool = False
    symlink_target: Optional[str] = None
    symlink_identity: Optional[FileIdentity] = None

    def changed_from(self, previous: "FileMetadataSnapshot") -> bool:
        """
        True when the path no longer refers to the file `previous` described.
        For a symlink the link itself is checked first (retarget or recreate),
        then the file it resolves to (rotation behind the link).
        """
        if self.is_symlink or previous.is_symlink:
            if self.is_symlink != previous.is_symlink:
                return True
            if self.symlink_identity != previous.symlink_identity:
                return True
            if self.symlink_target != previous.symlink_target:
                return True
        return self.identity != previous.identity


def stat_snapshot(path: str, file: Optional[BinaryIO] = None) -> FileMetadataSnapshot:
    """
    Capture identity and size of `path`.
    If `file` is given, identity and size come from the open handle so the
    snapshot describes exactly what is being read.
    Raises FileNotFoundError (and other OSError) as os.stat does.
    """
    st = os.fstat(file.fileno()) if file is not None else os.stat(path)
    lst = os.lstat(path)
    if not stat.S_ISLNK(lst.st_mode):
        return FileMetadataSnapshot(FileIdentity.from_stat(st), st.st_size)

    return FileMetadataSnapshot(
        identity=FileIdentity.from_stat(st),
        size=st.st_size,
        is_symlink=True,
        symlink_target=os.readlink(path),
        symlink_identity=FileIdentity.from_stat(lst),
    )


def read_link(path: str) -> Tuple[FileIdentity, str]:
    """Identity and target string of the symlink itself (no resolution)."""
    lst = os.lstat(path)
    return FileIdentity.from_stat(lst), os.readlink(path)
