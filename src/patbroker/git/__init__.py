"""Local git installation records."""

from patbroker.git.installation import (
    GitInstallation,
    GitInstallationRegistry,
    KnownDistribution,
    detect_distribution,
    path_equals,
)

__all__ = [
    "GitInstallation",
    "GitInstallationRegistry",
    "KnownDistribution",
    "detect_distribution",
    "path_equals",
]
