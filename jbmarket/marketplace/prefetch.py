"""Content hashing for plugin archives.

The package manager verifies fetched plugins against an SRI sha256 hash.
Zip archives are unpacked before hashing (the NAR of the directory), jars
are hashed flat, so the nix prefetcher is the accurate default.
"""

from __future__ import annotations

import logging
import ssl
import subprocess
from abc import ABC, abstractmethod
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from jbmarket.marketplace.base import NetworkFailure, NotFound
from jbmarket.utils.filesystem import compute_sri_hash, sri_from_digest

logger = logging.getLogger(__name__)

NIX32_ALPHABET = "0123456789abcdfghijklmnpqrsvwxyz"


class PrefetchError(Exception):
    """Error computing the hash of an archive."""

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


def nix32_decode(value: str) -> bytes:
    """Decode a nix base32 string into raw bytes.

    Args:
        value: nix base32 text (52 characters for sha256)

    Returns:
        Decoded digest

    Raises:
        ValueError: If the text contains invalid characters or trailing bits
    """
    size = len(value) * 5 // 8
    out = bytearray(size)
    for n, char in enumerate(reversed(value)):
        digit = NIX32_ALPHABET.find(char)
        if digit < 0:
            raise ValueError(f"Invalid nix base32 character: {char!r}")
        i, j = divmod(n * 5, 8)
        out[i] |= (digit << j) & 0xFF
        carry = digit >> (8 - j)
        if i + 1 < size:
            out[i + 1] |= carry
        elif carry:
            raise ValueError(f"Invalid nix base32 string: {value}")
    return bytes(out)


def store_name(plugin_id: str, version: str) -> str:
    """Build a store-safe name for a plugin archive."""
    return "".join(c if c.isalnum() else "-" for c in f"{plugin_id}-{version}-source")


class Prefetcher(ABC):
    """Computes the SRI hash the package manager will verify."""

    @abstractmethod
    def prefetch(self, name: str, url: str, unpack: bool, executable: bool) -> str:
        """Hash the archive at url.

        Args:
            name: Store name for the fetched file
            url: Download URL
            unpack: Hash the unpacked directory instead of the file
            executable: Mark the fetched file executable (jars)

        Returns:
            SRI hash ("sha256-<base64>")
        """
        ...


class NixPrefetcher(Prefetcher):
    """Prefetcher backed by nix-prefetch-url."""

    def __init__(self, prefetch_cmd: str = "nix-prefetch-url", store_cmd: str = "nix-store"):
        self._prefetch_cmd = prefetch_cmd
        self._store_cmd = store_cmd

    def prefetch(self, name: str, url: str, unpack: bool, executable: bool) -> str:
        cmd = [self._prefetch_cmd, "--print-path", "--type", "sha256", "--name", name]
        if unpack:
            cmd.append("--unpack")
        if executable:
            cmd.append("--executable")
        cmd.append(url)

        logger.debug("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            logger.error("nix-prefetch-url failed for %s: %s", url, e.stderr.strip())
            raise PrefetchError(f"nix-prefetch-url failed for {url}", url=url) from e
        except FileNotFoundError as e:
            raise PrefetchError(f"{self._prefetch_cmd} is not installed or not in PATH") from e

        out = result.stdout.strip()
        hash_nix32, sep, store_path = out.partition("\n")
        if not sep:
            raise PrefetchError(
                f"nix-prefetch-url generated invalid output to stdout: {out}", url=url
            )

        try:
            digest = nix32_decode(hash_nix32.strip())
        except ValueError as e:
            raise PrefetchError(f"failed decoding nix hash for {url}: {e}", url=url) from e

        # The store path is only needed for hashing
        subprocess.run(
            [self._store_cmd, "--delete", store_path.strip()],
            capture_output=True,
            text=True,
            check=False,
        )
        return sri_from_digest(digest)


class DownloadPrefetcher(Prefetcher):
    """Prefetcher that streams the archive and hashes the bytes.

    Only matches the package manager's hash for files fetched flat
    (jars). Unpacked archives are hashed flat with a warning.
    """

    def __init__(self, timeout: int = 600):
        self._timeout = timeout
        self._ssl_context = ssl.create_default_context()

    def prefetch(self, name: str, url: str, unpack: bool, executable: bool) -> str:
        if unpack:
            logger.warning("%s: hashing archive flat, unpacked hash is not computed", name)
        try:
            with urlopen(Request(url), timeout=self._timeout, context=self._ssl_context) as resp:
                return compute_sri_hash(resp)
        except HTTPError as e:
            if e.code == 404:
                raise NotFound(f"Archive not found: {url}", url=url) from e
            raise NetworkFailure(f"HTTP {e.code}: {e.reason} for {url}", url, e.code) from e
        except URLError as e:
            raise NetworkFailure(f"Failed to connect to {url}: {e.reason}", url) from e
        except TimeoutError as e:
            raise NetworkFailure(f"Download timed out for {url}", url) from e
