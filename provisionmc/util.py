"""Global utilities used internally. The functions can be used externally but upward
compatibility is not guaranteed unless explicitly specified.
"""

from pathlib import Path
import platform

from typing import Optional, Tuple, Iterator


# Executable names of a Java runtime, in order of preference, for the given OS.
jvm_bin_filenames = {
    "windows": ("javaw.exe", "java.exe"),
}
jvm_default_bin_filenames = ("java",)


def get_jvm_bin_filenames(os_name: Optional[str]) -> Tuple[str, ...]:
    """Return the executable names to look for in a runtime's `bin` directory.
    """
    return jvm_bin_filenames.get(os_name or "", jvm_default_bin_filenames)


def merge_dict(dst: dict, other: dict) -> None:
    """Merge a dictionary into a destination one.

    Merge the `other` dict into the `dst` dict. For every key/value in `other`, if the key
    is present in `dst`it does nothing. Unless values in both dict are also dict, in this
    case the merge is recursive. If the value in both dict are list, the 'dst' list is
    extended with the one of `other`, placed first. If a key is present in both `dst` and
    `other` but with different types, the value is not overwritten.

    :param dst: The source dictionary to merge `other` into.
    :param other: The dictionary merged into `dst`.
    """

    for k, v in other.items():
        if k in dst:
            dst_v = dst[k]
            if isinstance(dst_v, dict) and isinstance(v, dict):
                merge_dict(dst_v, v)
            elif isinstance(dst_v, list) and isinstance(v, list):
                dst[k] = v + dst_v
        else:
            dst[k] = v


def file_size_or_zero(path: Path) -> int:
    """Return the size of the given file, or zero if it's not a regular file.
    """
    try:
        return path.stat().st_size if path.is_file() else 0
    except OSError:
        return 0


def dir_has_entries(path: Path) -> bool:
    """Return true if the given path is a directory with at least one entry.
    """
    try:
        return path.is_dir() and next(path.iterdir(), None) is not None
    except OSError:
        return False


def iter_dirs(path: Path, max_depth: int) -> Iterator[Path]:
    """Walk every directory under the given one (itself included), breadth first, down
    to the given maximum depth, the given directory being at depth 0.
    """

    level = [path]
    for _depth in range(max_depth + 1):
        next_level = []
        for current in level:
            yield current
            try:
                children = sorted(p for p in current.iterdir() if p.is_dir())
            except OSError:
                continue
            next_level.extend(children)
        level = next_level
        if not level:
            break


class LibrarySpecifier:
    """A maven-style library specifier.
    """

    __slots__ = "group", "artifact", "version", "classifier", "extension"

    def __init__(self, group: str, artifact: str, version: str, classifier: Optional[str] = None, extension: str = "jar"):
        self.group = group
        self.artifact = artifact
        self.version = version
        self.classifier = classifier
        self.extension = extension

    @classmethod
    def from_str(cls, s: str) -> "LibrarySpecifier":
        """Parse a library specifier string 'group:artifact:version[:classifier]'.
        """

        ext_split = s.rsplit("@", maxsplit=1)
        ext = "jar" if len(ext_split) == 1 else ext_split[1]

        if not len(ext):
            raise ValueError("invalid library specifier: empty extension")

        parts = ext_split[0].split(":", 3)

        if len(parts) < 3:
            raise ValueError("invalid library specifier: too few parts")
        else:
            return LibrarySpecifier(parts[0], parts[1], parts[2], parts[3] if len(parts) == 4 else None, ext)

    def __str__(self) -> str:
        return f"{self.group}:{self.artifact}:{self.version}" + \
            ("" if self.classifier is None else f":{self.classifier}") + \
            ("" if self.extension == "jar" else f"@{self.extension}")

    def __eq__(self, other) -> bool:
        return isinstance(other, LibrarySpecifier) and \
            (self.group, self.artifact, self.version, self.classifier, self.extension) == \
            (other.group, other.artifact, other.version, other.classifier, other.extension)

    def __repr__(self) -> str:
        return f"<LibrarySpecifier {self}>"

    def __hash__(self) -> int:
        return hash((self.group, self.artifact, self.version, self.classifier, self.extension))

    def coordinate(self) -> Tuple[str, str, Optional[str], str]:
        """Return the identity of this library regardless of its version, two specifiers
        with the same coordinate designate the same library at different versions.
        """
        return (self.group, self.artifact, self.classifier, self.extension)

    def file_path(self) -> str:
        """Return the standard path to store the file of this specifier.

        The path separator will always be forward slashes '/', because it's compatible
        with linux/mac/windows and URL paths.

        Specifier `com.foo.bar:artifact:version@zip` gives
        `com/foo/bar/artifact/version/artifact-version.zip`.
        """

        file_name = f"{self.artifact}-{self.version}" + \
            ("" if self.classifier is None else f"-{self.classifier}") + \
            f".{self.extension}"

        return "/".join([*self.group.split("."), self.artifact, self.version, file_name])


def get_minecraft_dir() -> Path:
    """Internal function to get the default directory for installing
    and running Minecraft.
    """
    home = Path.home()
    return {
        "Windows": home.joinpath("AppData", "Roaming", ".minecraft"),
        "Darwin": home.joinpath("Library", "Application Support", "minecraft"),
    }.get(platform.system(), home / ".minecraft")


# Name of the OS has used by Minecraft.
minecraft_os = {
    "Linux": "linux",
    "Windows": "windows",
    "Darwin": "osx",
    "FreeBSD": "freebsd"
}.get(platform.system())

# Name of the processor's architecture has used by Minecraft.
minecraft_arch = {
    "i386": "x86",
    "i686": "x86",
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "armv7l": "arm32",
    "armv6l": "arm32",
}.get(platform.machine().lower())
