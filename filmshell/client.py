"""
Film Chunk Client - replay film download and local chunk loading

A film is published as a manifest (film-metadata.json) listing compressed
chunk blobs under a blob storage prefix. Each chunk is fetched from the UGC
blob host, inflated with zlib and stored as ``filmChunk<N>_dec``.

Authentication is out of scope: a spartan token obtained elsewhere is read
from the configuration file and sent with every blob request.
"""

import json
import logging
import time
import zlib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

# Try optional dependencies
try:
    import requests
    HAS_REQUESTS = True
except ImportError:
    HAS_REQUESTS = False

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BLOB_ORIGIN = "https://blobs-infiniteugc.svc.halowaypoint.com"
SPARTAN_HEADER = "x-343-authorization-spartan"

CHUNK_FILE_PREFIX = "filmChunk"
CHUNK_FILE_SUFFIX = "_dec"
MAX_FILM_CHUNKS = 20
FILM_METADATA_FILE = "film-metadata.json"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class FilmConfig:
    """Configuration for the film client."""
    blob_origin: str = BLOB_ORIGIN
    spartan_token: Optional[str] = None
    films_dir: str = "films"
    timeout: int = 30
    proxy: Optional[str] = None
    verify_ssl: bool = True
    user_agent: str = "filmshell"


CONFIG_DIR = Path.home() / ".filmshell"
CONFIG_FILE = CONFIG_DIR / "config.json"


def save_config(config: FilmConfig, path: Optional[Path] = None):
    """Save config to disk."""
    path = Path(path) if path else CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    data = asdict(config)
    if not config.spartan_token:
        data.pop("spartan_token")
    path.write_text(json.dumps(data, indent=2))


def load_config(path: Optional[Path] = None) -> FilmConfig:
    """Load config from disk, or create defaults.

    Unknown keys are ignored; an unreadable file gives the defaults.
    """
    path = Path(path) if path else CONFIG_FILE
    if path.exists():
        try:
            data = json.loads(path.read_text())
            return FilmConfig(**{k: v for k, v in data.items()
                                 if k in FilmConfig.__dataclass_fields__})
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.debug("Ignoring unreadable config %s: %s", path, e)
    return FilmConfig()


# ---------------------------------------------------------------------------
# Film manifest
# ---------------------------------------------------------------------------

def _get(obj: Dict[str, Any], name: str, default: Any = None) -> Any:
    """Read a PascalCase key, falling back to its camelCase spelling."""
    if name in obj:
        return obj[name]
    return obj.get(name[:1].lower() + name[1:], default)


@dataclass
class FilmChunk:
    index: int
    file_relative_path: str
    chunk_size: int = 0
    chunk_type: int = 0

    @property
    def file_name(self) -> str:
        return f"{CHUNK_FILE_PREFIX}{self.index}"


@dataclass
class FilmManifest:
    blob_prefix: str
    chunks: List[FilmChunk] = field(default_factory=list)
    match_id: str = ""
    film_length_ms: int = 0

    def blob_path_prefix(self, origin: str = BLOB_ORIGIN) -> str:
        """Blob prefix with the host origin and trailing slash removed."""
        prefix = self.blob_prefix
        if prefix.startswith(origin):
            prefix = prefix[len(origin):]
        return prefix.rstrip("/")


def parse_film_manifest(obj: Dict[str, Any]) -> FilmManifest:
    """Parse a film response (film-metadata.json) into a FilmManifest."""
    if not isinstance(obj, dict):
        raise ValueError("Film manifest must be a JSON object")

    custom = _get(obj, "CustomData") or {}
    chunks = []
    for entry in _get(custom, "Chunks") or []:
        chunks.append(FilmChunk(
            index=int(_get(entry, "Index", len(chunks))),
            file_relative_path=_get(entry, "FileRelativePath", ""),
            chunk_size=int(_get(entry, "ChunkSize", 0) or 0),
            chunk_type=int(_get(entry, "ChunkType", 0) or 0),
        ))

    return FilmManifest(
        blob_prefix=_get(obj, "BlobStoragePathPrefix", "") or "",
        chunks=chunks,
        match_id=_get(obj, "MatchId", "") or "",
        film_length_ms=int(_get(custom, "FilmLength", 0) or 0),
    )


def read_film_manifest(path: Union[str, Path]) -> FilmManifest:
    return parse_film_manifest(json.loads(Path(path).read_text(encoding="utf-8")))


# ---------------------------------------------------------------------------
# HTTP Transport
# ---------------------------------------------------------------------------

class FilmTransport:
    """HTTP transport for the UGC blob host."""

    def __init__(self, config: FilmConfig):
        self.config = config
        if not HAS_REQUESTS:
            raise ImportError(
                "The 'requests' library is required for HTTP transport.\n"
                "Install it with: pip install requests"
            )
        self.session = requests.Session()
        self.session.verify = config.verify_ssl

        if config.proxy:
            self.session.proxies = {
                "http": config.proxy,
                "https": config.proxy,
            }

    def get_blob(self, path: str) -> Tuple[int, bytes, float]:
        """GET a blob relative to the configured origin.

        Returns (http_status, response_body, latency_ms).
        """
        url = self.config.blob_origin.rstrip('/') + path
        headers = {
            "Accept": "application/octet-stream",
            "User-Agent": self.config.user_agent,
        }
        if self.config.spartan_token:
            headers[SPARTAN_HEADER] = self.config.spartan_token

        start = time.monotonic()
        try:
            resp = self.session.get(url, headers=headers, timeout=self.config.timeout)
            latency = (time.monotonic() - start) * 1000
            return resp.status_code, resp.content, latency
        except requests.exceptions.RequestException as e:
            latency = (time.monotonic() - start) * 1000
            raise ConnectionError(f"HTTP request failed ({latency:.0f}ms): {e}") from e


# ---------------------------------------------------------------------------
# High-level film client
# ---------------------------------------------------------------------------

@dataclass
class ChunkDownload:
    index: int
    path: Optional[Path]
    status: int
    size: int = 0
    inflated: bool = False
    latency_ms: float = 0.0


class FilmClient:
    """Download film chunks described by a manifest."""

    def __init__(self, config: Optional[FilmConfig] = None, transport: Optional[FilmTransport] = None):
        self.config = config or FilmConfig()
        self._transport = transport

    @property
    def transport(self) -> FilmTransport:
        if self._transport is None:
            self._transport = FilmTransport(self.config)
        return self._transport

    def download_film(self, manifest: FilmManifest, out_dir: Union[str, Path, None] = None) -> List[ChunkDownload]:
        """Fetch, inflate and store every chunk of the film.

        A chunk that fails to inflate is kept compressed as ``filmChunk<N>``.
        Chunks answered with a non-200 status are skipped.
        """
        if out_dir is None:
            out_dir = Path(self.config.films_dir) / (manifest.match_id or "film")
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)

        prefix = manifest.blob_path_prefix(self.config.blob_origin)
        results = []
        for chunk in manifest.chunks:
            status, body, latency = self.transport.get_blob(prefix + chunk.file_relative_path)
            if status != 200:
                logger.warning("Chunk %d: HTTP %d", chunk.index, status)
                results.append(ChunkDownload(chunk.index, None, status, latency_ms=latency))
                continue

            compressed_path = out_dir / chunk.file_name
            try:
                inflated = zlib.decompress(body)
            except zlib.error as e:
                logger.warning("Chunk %d: decompression failed, keeping original: %s", chunk.index, e)
                compressed_path.write_bytes(body)
                results.append(ChunkDownload(chunk.index, compressed_path, status, len(body),
                                             latency_ms=latency))
                continue

            path = out_dir / f"{chunk.file_name}{CHUNK_FILE_SUFFIX}"
            path.write_bytes(inflated)
            logger.debug("Chunk %d: %d -> %d bytes (%.0fms)", chunk.index, len(body), len(inflated), latency)
            results.append(ChunkDownload(chunk.index, path, status, len(inflated), True, latency))
        return results


# ---------------------------------------------------------------------------
# Local chunk loading
# ---------------------------------------------------------------------------

def load_film_chunks(film_dir: Union[str, Path], max_chunks: int = MAX_FILM_CHUNKS) -> List[bytes]:
    """Read consecutive filmChunk<N>_dec files, stopping at the first gap."""
    film_dir = Path(film_dir)
    if not film_dir.is_dir():
        raise FileNotFoundError(f"Film directory not found: {film_dir}")

    chunks = []
    for i in range(max_chunks):
        path = film_dir / f"{CHUNK_FILE_PREFIX}{i}{CHUNK_FILE_SUFFIX}"
        if not path.exists():
            break
        chunks.append(path.read_bytes())
    logger.debug("Loaded %d film chunks from %s", len(chunks), film_dir)
    return chunks


def concatenate_chunks(chunks: Sequence[bytes]) -> Tuple[bytes, List[int]]:
    """Join chunks; returns (data, start offset of each chunk)."""
    offsets = []
    pos = 0
    for chunk in chunks:
        offsets.append(pos)
        pos += len(chunk)
    return b"".join(chunks), offsets


def film_length_ms(film_dir: Union[str, Path]) -> Optional[int]:
    """Film length from a saved film-metadata.json, if present."""
    path = Path(film_dir) / FILM_METADATA_FILE
    if not path.exists():
        return None
    try:
        return read_film_manifest(path).film_length_ms or None
    except (OSError, ValueError) as e:
        logger.debug("Cannot read %s: %s", path, e)
        return None
