"""Semantic version and build information for the IPAM plugin."""

from __future__ import annotations

import platform

import semver

# Set at build time.
VERSION = ""
GIT_SHA = ""
GIT_TREE_STATE = ""
RELEASE_STATUS = "unreleased"

_ARCH_NAMES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
}


def get_version() -> semver.Version:
    """Return VERSION without its leading "v"; 0.0.0 when it does not parse."""
    try:
        return semver.Version.parse(VERSION[1:])
    except ValueError:
        return semver.Version(0, 0, 0)


def get_git_sha() -> str:
    return GIT_SHA


def get_full_version() -> str:
    """Return the version, with build information for unreleased builds."""
    if VERSION == "":
        return "UNKNOWN"
    if RELEASE_STATUS == "released":
        return VERSION
    if GIT_SHA == "":
        return f"{VERSION}-unknown"
    if GIT_TREE_STATE == "dirty":
        return f"{VERSION}-{GIT_SHA}.dirty"
    return f"{VERSION}-{GIT_SHA}"


def get_full_version_with_runtime_info() -> str:
    """Return the full version followed by "<os>/<arch>"."""
    system = platform.system().lower() or "unknown"
    machine = platform.machine().lower()
    arch = _ARCH_NAMES.get(machine, machine or "unknown")
    return f"{get_full_version()} {system}/{arch}"