"""Records of local Git for Windows installations.

A :class:`GitInstallation` is keyed by its root directory.  Two records are
the same installation when their roots are equal under case-insensitive
comparison (:func:`path_equals`), whatever :class:`KnownDistribution` tag
each was created with, so a set of records reduces to one entry per root.

A single record resolves ``git``, ``cmd``, ``sh``, ``config`` and
``libexec`` from its own tag, so two equal records carrying different tags
can point at different files.  :class:`GitInstallationRegistry` is where
paths are looked up: it keeps the first record seen for each root, and
:meth:`~GitInstallationRegistry.resolve` returns that record for any
spelling of the root.  It can also inspect candidate roots on disk to work
out which distribution lives there.
"""

from __future__ import annotations

import enum
import logging
from pathlib import Path, PureWindowsPath
from typing import Iterable, Iterator, Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, PureWindowsPath]


def _canonical(path: PathLike) -> str:
    text = str(PureWindowsPath(path)).rstrip("\\")
    return text.casefold()


def path_equals(a: Optional[PathLike], b: Optional[PathLike]) -> bool:
    """Compare two file-system paths case-insensitively.

    Separators are normalised and a trailing separator is ignored, so
    ``C:/Program Files/Git/`` equals ``c:\\PROGRAM FILES\\git``.
    """
    if a is None or b is None:
        return a is b
    return _canonical(a) == _canonical(b)


class KnownDistribution(enum.Enum):
    """Git for Windows layouts, each mapping a role to a path under the root."""

    GIT_FOR_WINDOWS_32_V1 = "git-for-windows-32-v1"
    GIT_FOR_WINDOWS_32_V2 = "git-for-windows-32-v2"
    GIT_FOR_WINDOWS_64_V2 = "git-for-windows-64-v2"

    @property
    def layout(self) -> dict[str, str]:
        """Relative paths of ``cmd``, ``config``, ``git``, ``libexec`` and ``sh``."""
        return _LAYOUTS[self]


_LAYOUTS: dict[KnownDistribution, dict[str, str]] = {
    KnownDistribution.GIT_FOR_WINDOWS_32_V1: {
        "cmd": r"cmd\git.exe",
        "config": r"etc\gitconfig",
        "git": r"bin\git.exe",
        "libexec": r"libexec\git-core",
        "sh": r"bin\sh.exe",
    },
    KnownDistribution.GIT_FOR_WINDOWS_32_V2: {
        "cmd": r"cmd\git.exe",
        "config": r"mingw32\etc\gitconfig",
        "git": r"mingw32\bin\git.exe",
        "libexec": r"mingw32\libexec\git-core",
        "sh": r"usr\bin\sh.exe",
    },
    KnownDistribution.GIT_FOR_WINDOWS_64_V2: {
        "cmd": r"cmd\git.exe",
        "config": r"mingw64\etc\gitconfig",
        "git": r"mingw64\bin\git.exe",
        "libexec": r"mingw64\libexec\git-core",
        "sh": r"usr\bin\sh.exe",
    },
}

# Detection order: the most specific layout wins when several match.
_DETECTION_ORDER = (
    KnownDistribution.GIT_FOR_WINDOWS_64_V2,
    KnownDistribution.GIT_FOR_WINDOWS_32_V2,
    KnownDistribution.GIT_FOR_WINDOWS_32_V1,
)


class GitInstallation:
    """One git installation: a root directory plus its distribution layout.

    Equality and hashing use only the case-folded root path.  The resolved
    paths follow :attr:`distribution`; look records up through a
    :class:`GitInstallationRegistry` when every spelling of a root must
    resolve to the same files.

    Args:
        path: Root directory of the installation.
        distribution: Which layout the installation uses.
    """

    __slots__ = ("_path", "_distribution")

    def __init__(self, path: PathLike, distribution: KnownDistribution) -> None:
        if not str(path).strip():
            raise ValueError("installation path must not be empty")
        self._path = PureWindowsPath(path)
        self._distribution = distribution

    @property
    def path(self) -> PureWindowsPath:
        return self._path

    @property
    def distribution(self) -> KnownDistribution:
        return self._distribution

    def _resolve(self, role: str) -> PureWindowsPath:
        return self._path / self._distribution.layout[role]

    @property
    def cmd(self) -> PureWindowsPath:
        """The ``cmd`` wrapper that puts git on ``PATH``."""
        return self._resolve("cmd")

    @property
    def config(self) -> PureWindowsPath:
        """The system-level ``gitconfig``."""
        return self._resolve("config")

    @property
    def git(self) -> PureWindowsPath:
        """The git executable."""
        return self._resolve("git")

    @property
    def libexec(self) -> PureWindowsPath:
        """Directory holding git's helper executables."""
        return self._resolve("libexec")

    @property
    def sh(self) -> PureWindowsPath:
        """The bundled POSIX shell."""
        return self._resolve("sh")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GitInstallation):
            return NotImplemented
        return path_equals(self._path, other._path)

    def __hash__(self) -> int:
        return hash(_canonical(self._path))

    def __repr__(self) -> str:
        return f"GitInstallation({str(self._path)!r}, {self._distribution.name})"


class GitInstallationRegistry:
    """Deduplicated collection of :class:`GitInstallation` records.

    The first record added for a root is kept; later records for the same
    root (in any letter case, from any distribution) are ignored.

    Example::

        registry = GitInstallationRegistry()
        registry.add(GitInstallation(r"C:\\Program Files\\Git", KnownDistribution.GIT_FOR_WINDOWS_64_V2))
        registry.add(GitInstallation(r"c:\\program files\\git", KnownDistribution.GIT_FOR_WINDOWS_32_V2))
        assert len(registry) == 1
    """

    def __init__(self, installations: Iterable[GitInstallation] = ()) -> None:
        self._by_root: dict[str, GitInstallation] = {}
        for installation in installations:
            self.add(installation)

    def add(self, installation: GitInstallation) -> bool:
        """Add *installation*.  Returns ``False`` if its root is already known."""
        key = _canonical(installation.path)
        if key in self._by_root:
            logger.debug("Ignoring duplicate installation %r", installation)
            return False
        self._by_root[key] = installation
        return True

    def resolve(self, root: PathLike) -> Optional[GitInstallation]:
        """Return the record kept for *root*, if any.

        Every spelling of the root gets the same record, so the resolved
        paths agree whichever record was added first.
        """
        return self._by_root.get(_canonical(root))

    def discover(self, roots: Iterable[Union[str, Path]]) -> list[GitInstallation]:
        """Inspect *roots* on disk and register each one that holds a git layout.

        A root matches a distribution when its ``git`` executable exists at
        the path that distribution's layout names.

        Returns:
            The installations newly added by this call.
        """
        added: list[GitInstallation] = []
        for root in roots:
            distribution = detect_distribution(Path(root))
            if distribution is None:
                logger.debug("No git installation found under %s", root)
                continue
            installation = GitInstallation(str(root), distribution)
            if self.add(installation):
                added.append(installation)
        return added

    def __iter__(self) -> Iterator[GitInstallation]:
        return iter(self._by_root.values())

    def __len__(self) -> int:
        return len(self._by_root)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, GitInstallation):
            return _canonical(item.path) in self._by_root
        if isinstance(item, (str, PureWindowsPath)):
            return _canonical(item) in self._by_root
        return False


def detect_distribution(root: Path) -> Optional[KnownDistribution]:
    """Work out which distribution is installed under *root*, if any."""
    for distribution in _DETECTION_ORDER:
        relative = PureWindowsPath(distribution.layout["git"]).parts
        if root.joinpath(*relative).is_file():
            return distribution
    return None
