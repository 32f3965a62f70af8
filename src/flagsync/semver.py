from __future__ import annotations
import re
from dataclasses import dataclass


# https://semver.org/#is-there-a-suggested-regular-expression-regex-to-check-a-semver-string
_semver_re = re.compile(
    r"^(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<build>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$",
    flags=re.ASCII,
)


@dataclass(frozen=True)
class SemanticVersion:
    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()

    def compare(self, other: SemanticVersion) -> int:
        """Compare by SemVer 2.0.0 precedence. Build metadata is not part of the version."""
        a = (self.major, self.minor, self.patch)
        b = (other.major, other.minor, other.patch)
        if a != b:
            return -1 if a < b else 1

        # A version without prerelease has higher precedence.
        if not self.prerelease or not other.prerelease:
            return (not self.prerelease) - (not other.prerelease)

        for x, y in zip(self.prerelease, other.prerelease):
            if x == y:
                continue
            x_num, y_num = x.isdigit(), y.isdigit()
            if x_num and y_num:
                return -1 if int(x) < int(y) else 1
            if x_num != y_num:
                # Numeric identifiers have lower precedence than alphanumeric ones.
                return -1 if x_num else 1
            return -1 if x < y else 1

        return (len(self.prerelease) > len(other.prerelease)) - (len(self.prerelease) < len(other.prerelease))


def try_parse_version(version: str) -> SemanticVersion | None:
    """
    Parse a strict SemVer 2.0.0 version string, None if it is not one.
    Build metadata is dropped.
    """
    m = _semver_re.fullmatch(version)
    if m is None:
        return None
    prerelease = m["prerelease"]
    return SemanticVersion(int(m["major"]), int(m["minor"]), int(m["patch"]), tuple(prerelease.split(".")) if prerelease else ())


def parse_version(version: str) -> SemanticVersion:
    v = try_parse_version(version)
    if v is None:
        raise ValueError(f"Invalid semver string: {version}")
    return v
