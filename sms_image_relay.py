#!/usr/bin/env python3
"""
SMS Image Relay - Send images over a narrow text channel as encrypted fragments

This tool compresses an image until it fits a small byte budget, splits the
base64 payload into SMS-sized fragments, encrypts every fragment on its own
with AES-256-CBC, pushes them through a simulated in-process SMS channel, and
reassembles the original bytes into an image file at the receiving end.

REQUIREMENTS:
  Python 3.8+

  Install with:
    pip install -e .

USAGE:
  Run a full simulated transfer:
    sms-image-relay send photo.jpg --output-dir ./inbox

  Keep the wire fragments and rebuild the image later:
    sms-image-relay send photo.jpg --fragments-out photo.sms
    sms-image-relay reconstruct photo.sms --output-dir ./inbox

  Compress only and print the base64 payload:
    sms-image-relay compress photo.jpg

  Rebuild an image from a pasted base64 payload:
    sms-image-relay decode-base64 payload.txt

  Show the key fingerprint and defaults:
    sms-image-relay info

For detailed help on each command:
    sms-image-relay send --help
"""

import sys
import os
import io
import json
import math
import time
import base64
import binascii
import hashlib
import random
import re
import threading
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import click
from PIL import Image, UnidentifiedImageError
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

VERSION = "1.0.0"

APP_NAME = "sms-image-relay"
HOME_ENVVAR = "SMS_IMAGE_RELAY_HOME"

# Compression defaults (max clarity within ~50 SMS)
DEFAULT_TARGET_BYTES = 5500
DEFAULT_INITIAL_WIDTH = 128
DEFAULT_MIN_WIDTH = 64
DEFAULT_INITIAL_QUALITY = 0.8
DEFAULT_MIN_QUALITY = 0.35
DEFAULT_QUALITY_STEP = 0.1
DEFAULT_WIDTH_RATIO = 0.85

# Fragmenting defaults
DEFAULT_CHUNK_SIZE = 110
DEFAULT_MAX_SMS = 50

# Crypto constants
KEY_SIZE = 32  # AES-256
IV_SIZE = 16  # one AES block
KEY_STORAGE_NAME = "image_encryption_key"
KEYSTORE_FILENAME = "keystore.json"
FRAGMENT_DELIMITER = ":"

# Output image extension per Pillow format
IMAGE_EXTENSIONS = {
    'JPEG': 'jpg',
    'WEBP': 'webp',
    'PNG': 'png',
}

_FRAME_PATTERN = re.compile(r'^(\d+),(\d+)\|(.*)$', re.DOTALL)
_NON_BASE64 = re.compile(r'[^A-Za-z0-9+/]')


# ============================================================================
# RESULT TYPES
# ============================================================================

class RelayError(Exception):
    """Base class for programmer errors raised by this module."""


class InvalidTransitionError(RelayError):
    """Raised when a transfer is driven through its stages out of order."""


class FailureKind(Enum):
    """Why an operation failed (or, for BUDGET_UNREACHABLE, why it is degraded)."""

    DECODE_FAULT = "decode-fault"
    STORAGE_FAULT = "storage-fault"
    CORRUPT_FRAGMENT = "corrupt-fragment"
    MISSING_FRAGMENTS = "missing-fragments"
    NO_FRAGMENTS = "no-fragments"
    BUDGET_UNREACHABLE = "budget-unreachable"
    CANCELLED = "cancelled"


@dataclass
class Result:
    """Outcome of an operation whose expected failures are not exceptions.

    Attributes:
        ok: True if the operation produced a usable value
        value: The produced value (or a partial report on failure)
        kind: Failure kind, or a caveat on an ok result (BUDGET_UNREACHABLE)
        message: Human-readable summary
    """

    ok: bool
    value: Any = None
    kind: Optional[FailureKind] = None
    message: str = ""

    @classmethod
    def success(cls, value: Any, kind: Optional[FailureKind] = None,
                message: str = "") -> "Result":
        return cls(ok=True, value=value, kind=kind, message=message)

    @classmethod
    def failure(cls, kind: FailureKind, message: str, value: Any = None) -> "Result":
        return cls(ok=False, value=value, kind=kind, message=message)


# ============================================================================
# CONFIGURATION
# ============================================================================

def default_app_dir() -> str:
    """Directory holding the key store and reconstructed images."""
    override = os.environ.get(HOME_ENVVAR)
    if override:
        return override
    return click.get_app_dir(APP_NAME)


@dataclass
class TransferConfig:
    """Caller-supplied knobs for a single transfer."""

    target_bytes: int = DEFAULT_TARGET_BYTES
    initial_width: int = DEFAULT_INITIAL_WIDTH
    min_width: int = DEFAULT_MIN_WIDTH
    initial_quality: float = DEFAULT_INITIAL_QUALITY
    min_quality: float = DEFAULT_MIN_QUALITY
    quality_step: float = DEFAULT_QUALITY_STEP
    width_ratio: float = DEFAULT_WIDTH_RATIO
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_sms: int = DEFAULT_MAX_SMS
    image_format: str = 'JPEG'
    framed: bool = True
    recovery_mode: bool = False
    max_retransmits: int = 0
    workers: int = 1
    output_dir: Optional[str] = None

    @property
    def extension(self) -> str:
        return IMAGE_EXTENSIONS[self.image_format]

    def resolved_output_dir(self) -> str:
        if self.output_dir:
            return self.output_dir
        return os.path.join(default_app_dir(), 'reconstructed')

    def validate(self) -> None:
        """Reject bounds that can never describe a sensible search.

        Raises:
            ValueError: On the first invalid setting found
        """
        if self.target_bytes <= 0:
            raise ValueError(f"target_bytes must be positive, got {self.target_bytes}")
        if self.min_width <= 0:
            raise ValueError(f"min_width must be positive, got {self.min_width}")
        if self.min_width > self.initial_width:
            raise ValueError(
                f"min_width ({self.min_width}) exceeds initial_width ({self.initial_width})"
            )
        if not 0.0 < self.min_quality <= self.initial_quality <= 1.0:
            raise ValueError(
                f"Quality bounds must satisfy 0 < min ({self.min_quality}) "
                f"<= initial ({self.initial_quality}) <= 1"
            )
        if self.quality_step <= 0:
            raise ValueError(f"quality_step must be positive, got {self.quality_step}")
        if not 0.0 < self.width_ratio < 1.0:
            raise ValueError(f"width_ratio must be in (0, 1), got {self.width_ratio}")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.max_retransmits < 0:
            raise ValueError("max_retransmits cannot be negative")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.image_format not in IMAGE_EXTENSIONS:
            raise ValueError(
                f"Unsupported image format: {self.image_format} "
                f"(choose from {', '.join(sorted(IMAGE_EXTENSIONS))})"
            )


# ============================================================================
# KEY STORE
# ============================================================================

class SecretStore:
    """Named secrets kept in a JSON file readable only by its owner."""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Key store {self.path} is not a JSON object")
        return data

    def get(self, name: str) -> Optional[str]:
        return self._read().get(name)

    def set(self, name: str, value: str) -> None:
        data = self._read()
        data[name] = value

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        # Write atomically, owner-only from the first byte
        temp_file = self.path + '.tmp'
        fd = os.open(temp_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        os.replace(temp_file, self.path)


class KeyStore:
    """Owns the installation's single AES-256 key.

    The key is loaded from (or generated into) a SecretStore on first use and
    cached for the life of the object. If the store cannot be read or written,
    an ephemeral key is generated instead so callers are never blocked; such a
    key is lost when the process exits, and fragments encrypted under it
    cannot be decrypted by a later run.
    """

    def __init__(self, store: SecretStore, name: str = KEY_STORAGE_NAME):
        self.store = store
        self.name = name
        self.ephemeral = False
        self._key: Optional[bytes] = None
        self._init_lock = threading.Lock()

    @classmethod
    def open_default(cls, app_dir: Optional[str] = None) -> "KeyStore":
        app_dir = app_dir or default_app_dir()
        return cls(SecretStore(os.path.join(app_dir, KEYSTORE_FILENAME)))

    def get_key(self) -> bytes:
        """Return the key, creating and persisting it on first use."""
        key = self._key
        if key is not None:
            return key

        with self._init_lock:
            if self._key is None:
                self._key = self._load_or_create()
            return self._key

    def fingerprint(self) -> str:
        return hashlib.sha256(self.get_key()).hexdigest()[:16]

    def _load_or_create(self) -> bytes:
        try:
            stored = self.store.get(self.name)
            if stored:
                key = base64.b64decode(stored, validate=True)
                if len(key) != KEY_SIZE:
                    raise ValueError(f"Stored key is {len(key)} bytes, expected {KEY_SIZE}")
                return key

            key = os.urandom(KEY_SIZE)
            self.store.set(self.name, base64.b64encode(key).decode('ascii'))
            return key
        except (OSError, ValueError) as e:
            click.echo(f"Warning: key storage unavailable ({e}); "
                       f"using an ephemeral key for this session", err=True)
            self.ephemeral = True
            return os.urandom(KEY_SIZE)


# ============================================================================
# COMPRESSION
# ============================================================================

@dataclass
class EncodedPayload:
    """Base64 text of a compressed image plus the settings that produced it."""

    text: str
    width: int
    quality: float
    estimated_size: float
    within_budget: bool
    image_format: str = 'JPEG'
    attempts: List[Tuple[int, float, float]] = field(default_factory=list)

    def decode(self) -> bytes:
        return base64.b64decode(self.text)


def estimate_decoded_size(b64_text: str) -> float:
    """Approximate binary size of base64 text (4 chars carry 3 bytes)."""
    return len(b64_text) * 3 / 4


def load_image(source) -> Image.Image:
    """Open an image from bytes, a path, or a binary file object."""
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)
    img = Image.open(source)
    img.load()
    return img


def encode_image(img: Image.Image, width: int, quality: float,
                 image_format: str = 'JPEG') -> str:
    """Resize to width (keeping aspect ratio) and re-encode as base64 text.

    Args:
        img: Decoded source image
        width: Target width in pixels
        quality: Encoder quality in 0..1
        image_format: Pillow format name

    Returns:
        Base64 string of the encoded image
    """
    height = max(1, round(img.height * width / img.width))
    resized = img.resize((width, height), Image.Resampling.LANCZOS)

    if image_format == 'JPEG' and resized.mode not in ('RGB', 'L'):
        resized = resized.convert('RGB')

    buffer = io.BytesIO()
    resized.save(buffer, format=image_format, quality=max(1, round(quality * 100)))
    return base64.b64encode(buffer.getvalue()).decode('ascii')


def compress_to_target_size(source,
                            target_bytes: int = DEFAULT_TARGET_BYTES,
                            initial_width: int = DEFAULT_INITIAL_WIDTH,
                            min_width: int = DEFAULT_MIN_WIDTH,
                            initial_quality: float = DEFAULT_INITIAL_QUALITY,
                            min_quality: float = DEFAULT_MIN_QUALITY,
                            quality_step: float = DEFAULT_QUALITY_STEP,
                            width_ratio: float = DEFAULT_WIDTH_RATIO,
                            image_format: str = 'JPEG',
                            quiet: bool = False) -> Result:
    """Search (width, quality) space until the encoded image fits target_bytes.

    Each pass lowers quality by quality_step and shrinks width by width_ratio.
    The first encoding that fits wins. When either bound is crossed, one last
    encoding at (min_width, min_quality) is returned even if it is still too
    large; if it is, the result is ok but carries kind=BUDGET_UNREACHABLE.

    Args:
        source: Image bytes, path, or binary file object
        target_bytes: Maximum decoded payload size
        initial_width, min_width: Width search bounds in pixels
        initial_quality, min_quality: Quality search bounds in 0..1
        quality_step: Quality decrement per pass
        width_ratio: Width multiplier per pass (floored)
        image_format: Pillow output format
        quiet: Suppress per-attempt progress lines

    Returns:
        Result wrapping an EncodedPayload, or a DECODE_FAULT failure if the
        image cannot be read or re-encoded
    """
    attempts = []
    try:
        img = load_image(source)

        width = initial_width
        quality = initial_quality
        while width >= min_width and quality >= min_quality:
            b64 = encode_image(img, width, quality, image_format)
            size = estimate_decoded_size(b64)
            attempts.append((width, quality, size))
            if not quiet:
                click.echo(f"Trying width={width}, quality={quality}, size={size:.0f}")

            if size <= target_bytes:
                if not quiet:
                    click.echo(f"Compression success: {size:.0f} bytes")
                payload = EncodedPayload(b64, width, quality, size, True,
                                         image_format, attempts)
                return Result.success(payload)

            quality = round(quality - quality_step, 4)
            width = math.floor(width * width_ratio)

        b64 = encode_image(img, min_width, min_quality, image_format)
        size = estimate_decoded_size(b64)
        attempts.append((min_width, min_quality, size))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        return Result.failure(FailureKind.DECODE_FAULT, f"Compression failed: {e}")

    within_budget = size <= target_bytes
    if within_budget:
        if not quiet:
            click.echo(f"Compression success: {size:.0f} bytes")
        payload = EncodedPayload(b64, min_width, min_quality, size, True,
                                 image_format, attempts)
        return Result.success(payload)

    message = (f"Could not reach {target_bytes} bytes; "
               f"returning smallest version ({size:.0f} bytes)")
    if not quiet:
        click.echo(f"Warning: {message}", err=True)
    payload = EncodedPayload(b64, min_width, min_quality, size, within_budget,
                             image_format, attempts)
    return Result.success(payload, kind=FailureKind.BUDGET_UNREACHABLE, message=message)


# ============================================================================
# FRAGMENT ENCRYPTION (AES-256-CBC, fresh IV per fragment)
# ============================================================================

def encrypt_fragment(plaintext: str, key: bytes) -> str:
    """Encrypt one fragment into its wire form "<b64 IV>:<b64 ciphertext>"."""
    iv = os.urandom(IV_SIZE)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode('utf-8')) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return (base64.b64encode(iv).decode('ascii')
            + FRAGMENT_DELIMITER
            + base64.b64encode(ciphertext).decode('ascii'))


def decrypt_fragment(wire: str, key: bytes) -> Result:
    """Decrypt one wire fragment.

    Every way a fragment can be unusable (no delimiter, an empty half, bad
    base64, bad padding, wrong key, empty plaintext) yields a
    CORRUPT_FRAGMENT failure instead of an exception.

    Args:
        wire: Wire-format fragment
        key: 32-byte AES key

    Returns:
        Result wrapping the plaintext string
    """
    iv_text, sep, ct_text = wire.strip().partition(FRAGMENT_DELIMITER)
    if not sep:
        return Result.failure(FailureKind.CORRUPT_FRAGMENT, "Missing IV delimiter")
    if not iv_text or not ct_text:
        return Result.failure(FailureKind.CORRUPT_FRAGMENT, "Empty IV or ciphertext")

    try:
        iv = base64.b64decode(iv_text, validate=True)
        ciphertext = base64.b64decode(ct_text, validate=True)
    except (binascii.Error, ValueError):
        return Result.failure(FailureKind.CORRUPT_FRAGMENT, "Invalid base64 in fragment")

    if len(iv) != IV_SIZE:
        return Result.failure(FailureKind.CORRUPT_FRAGMENT, f"IV is {len(iv)} bytes")
    if not ciphertext or len(ciphertext) % IV_SIZE:
        return Result.failure(FailureKind.CORRUPT_FRAGMENT, "Ciphertext is not block aligned")

    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = (unpadder.update(padded) + unpadder.finalize()).decode('utf-8')
    except (ValueError, UnicodeDecodeError):
        return Result.failure(FailureKind.CORRUPT_FRAGMENT,
                              "Decryption failed (wrong key or tampered fragment)")

    if not plaintext:
        return Result.failure(FailureKind.CORRUPT_FRAGMENT, "Fragment decrypted to nothing")
    return Result.success(plaintext)


def _map_fragments(func: Callable, items: List, workers: int = 1) -> List:
    # pool.map yields in input order
    if workers <= 1 or len(items) < 2:
        return [func(item) for item in items]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(func, items))


def encrypt_fragments(plaintexts: List[str], key: bytes, workers: int = 1) -> List[str]:
    return _map_fragments(lambda text: encrypt_fragment(text, key), plaintexts, workers)


def decrypt_fragments(wire_fragments: List[str], key: bytes, workers: int = 1) -> List[Result]:
    return _map_fragments(lambda wire: decrypt_fragment(wire, key), wire_fragments, workers)


# ============================================================================
# CHUNKING AND REASSEMBLY
# ============================================================================

def create_sms_chunks(payload: str, chunk_size: int = DEFAULT_CHUNK_SIZE,
                      max_sms: int = DEFAULT_MAX_SMS) -> List[str]:
    """Split payload left to right into fragments of at most chunk_size chars.

    Exceeding max_sms only prints a warning; every fragment is still returned.

    Example:
        >>> create_sms_chunks("abcdefg", chunk_size=3)
        ['abc', 'def', 'g']
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    chunks = [payload[i:i + chunk_size] for i in range(0, len(payload), chunk_size)]

    if len(chunks) > max_sms:
        click.echo(f"Warning: Too many chunks: {len(chunks)}, "
                   f"exceeds SMS limit ({max_sms})", err=True)

    return chunks


def frame_fragment(index: int, total: int, text: str) -> str:
    """Prefix a fragment with its 0-based position: "<index>,<total>|<text>"."""
    return f"{index},{total}|{text}"


def parse_fragment_frame(text: str) -> Optional[Tuple[int, int, str]]:
    """Split a framed fragment into (index, total, text), or None if malformed."""
    match = _FRAME_PATTERN.match(text)
    if not match:
        return None
    index, total = int(match.group(1)), int(match.group(2))
    if total <= 0 or index >= total:
        return None
    return index, total, match.group(3)


def find_missing_indices(wire_fragments: List[str], key: bytes,
                         workers: int = 1) -> Optional[List[int]]:
    """Indices absent from a set of framed fragments.

    Returns:
        Sorted missing indices, or None if no fragment could be decoded (the
        total is then unknown)
    """
    totals = Counter()
    seen = set()
    for result in decrypt_fragments(wire_fragments, key, workers):
        if not result.ok:
            continue
        frame = parse_fragment_frame(result.value)
        if frame is None:
            continue
        totals[frame[1]] += 1
        seen.add((frame[0], frame[1]))

    if not totals:
        return None
    total = totals.most_common(1)[0][0]
    present = {index for index, frame_total in seen if frame_total == total}
    return [i for i in range(total) if i not in present]


def _decode_base64_lenient(text: str) -> bytes:
    # Recovery path: tolerate stray characters and a ragged tail
    cleaned = _NON_BASE64.sub('', text)
    remainder = len(cleaned) % 4
    if remainder == 1:
        cleaned = cleaned[:-1]
    elif remainder:
        cleaned += '=' * (4 - remainder)
    return base64.b64decode(cleaned)


def write_reconstructed_file(data: bytes, output_dir: str, extension: str = 'jpg') -> str:
    """Write data to output_dir/reconstructed_<unix-millis>.<extension>.

    Raises:
        OSError: If the directory or file cannot be written
    """
    os.makedirs(output_dir, exist_ok=True)

    stamp = int(time.time() * 1000)
    path = os.path.join(output_dir, f"reconstructed_{stamp}.{extension}")
    suffix = 1
    while os.path.exists(path):
        path = os.path.join(output_dir, f"reconstructed_{stamp}_{suffix}.{extension}")
        suffix += 1

    temp_file = path + '.tmp'
    try:
        with open(temp_file, 'wb') as f:
            f.write(data)
        os.replace(temp_file, path)
    except OSError:
        if os.path.exists(temp_file):
            os.remove(temp_file)
        raise
    return path


def reassemble_fragments(wire_fragments: List[str], key: bytes, output_dir: str,
                         extension: str = 'jpg', framed: bool = True,
                         recovery_mode: bool = False, workers: int = 1,
                         quiet: bool = False) -> Result:
    """Decrypt, order, and join wire fragments, then write the decoded image.

    Fragments that fail to decrypt are dropped with a warning. In framed mode
    each plaintext carries "<index>,<total>|" and fragments are sorted by
    index, deduplicated, and checked for gaps; a gap fails the reassembly
    unless recovery_mode is set. Unframed fragments are trusted to be in
    production order.

    Args:
        wire_fragments: Wire-format fragments as received
        key: 32-byte AES key
        output_dir: Directory for the reconstructed file
        extension: File extension of the reconstructed image
        framed: Whether plaintexts carry index/total frames
        recovery_mode: Write whatever can be decoded despite gaps
        workers: Threads used for decryption
        quiet: Suppress per-fragment warnings

    Returns:
        Result wrapping a report dict:
            - path: Written file
            - fragments_received, fragments_used: Counts
            - dropped: Positions (in wire_fragments) that were unusable
            - duplicates: Positions discarded as repeats of an earlier index
            - missing: Indices never received (framed mode)
            - bytes_written, sha256: Written content summary
    """
    report = {
        'path': None,
        'fragments_received': len(wire_fragments),
        'fragments_used': 0,
        'dropped': [],
        'duplicates': [],
        'missing': [],
    }

    if not wire_fragments:
        return Result.failure(FailureKind.NO_FRAGMENTS, "No fragments provided", report)

    texts = []
    parsed = []
    for position, result in enumerate(decrypt_fragments(wire_fragments, key, workers)):
        if not result.ok:
            report['dropped'].append(position)
            if not quiet:
                click.echo(f"Warning: dropping fragment {position + 1}: {result.message}", err=True)
            continue

        if not framed:
            texts.append(result.value)
            continue

        frame = parse_fragment_frame(result.value)
        if frame is None:
            report['dropped'].append(position)
            if not quiet:
                click.echo(f"Warning: dropping fragment {position + 1}: malformed frame", err=True)
            continue
        parsed.append((position,) + frame)

    if framed and parsed:
        # Fragments disagreeing with the majority total belong to another payload
        total = Counter(p[2] for p in parsed).most_common(1)[0][0]
        by_index = {}
        for position, index, frame_total, text in parsed:
            if frame_total != total:
                report['dropped'].append(position)
            elif index in by_index:
                report['duplicates'].append(position)
            else:
                by_index[index] = text

        texts = [by_index[i] for i in sorted(by_index)]
        report['missing'] = [i for i in range(total) if i not in by_index]
        report['dropped'].sort()

    if not texts:
        return Result.failure(FailureKind.NO_FRAGMENTS,
                              "No fragment could be decrypted", report)

    report['fragments_used'] = len(texts)

    if report['missing'] and not recovery_mode:
        return Result.failure(
            FailureKind.MISSING_FRAGMENTS,
            f"Missing fragments {report['missing']} of {len(texts) + len(report['missing'])}",
            report,
        )

    joined = ''.join(texts)
    try:
        data = base64.b64decode(joined, validate=True)
    except (binascii.Error, ValueError) as e:
        if not recovery_mode:
            return Result.failure(FailureKind.DECODE_FAULT,
                                  f"Reassembled payload is not valid base64: {e}", report)
        data = _decode_base64_lenient(joined)
        report['decode_lenient'] = True

    try:
        path = write_reconstructed_file(data, output_dir, extension)
    except OSError as e:
        return Result.failure(FailureKind.STORAGE_FAULT,
                              f"Could not write reconstructed image: {e}", report)

    report['path'] = path
    report['bytes_written'] = len(data)
    report['sha256'] = hashlib.sha256(data).hexdigest()
    return Result.success(report)


# ============================================================================
# TRANSPORT SIMULATION
# ============================================================================

class InProcessChannel:
    """Ordered in-process stand-in for an SMS carrier.

    By default every message sent is delivered once, in order, on the next
    poll(). drop lists send positions (0-based, counting every send including
    retransmissions) that are silently lost. With reorder set, nothing is
    delivered until flush(), which releases the backlog shuffled.
    """

    def __init__(self, drop=(), reorder: bool = False, seed: Optional[int] = None):
        self.drop = set(drop)
        self.reorder = reorder
        self._rng = random.Random(seed)
        self._pending = deque()
        self._sent = 0

    def send(self, message: str) -> None:
        position = self._sent
        self._sent += 1
        if position in self.drop:
            return
        self._pending.append(message)

    def _drain(self) -> List[str]:
        messages = list(self._pending)
        self._pending.clear()
        return messages

    def poll(self) -> List[str]:
        if self.reorder:
            return []
        return self._drain()

    def flush(self) -> List[str]:
        messages = self._drain()
        if self.reorder:
            self._rng.shuffle(messages)
        return messages


# ============================================================================
# TRANSFER PIPELINE
# ============================================================================

class TransferState(Enum):
    IDLE = "idle"
    COMPRESSING = "compressing"
    ENCRYPTING = "chunking+encrypting"
    TRANSMITTING = "transmitting"
    RECONSTRUCTING = "reconstructing"
    DONE = "done"
    FAILED = "failed"


class TransferEvent(Enum):
    START = "start"
    COMPRESSED = "compressed"
    ENCRYPTED = "encrypted"
    DELIVERED = "delivered"
    RECONSTRUCTED = "reconstructed"
    FAIL = "fail"


@dataclass
class StateTransition:
    from_state: TransferState
    event: TransferEvent
    to_state: TransferState
    timestamp: float = field(default_factory=time.time)


class TransferStateMachine:
    """Enforces the stage order of a single transfer."""

    TRANSITIONS: Dict[TransferState, Dict[TransferEvent, TransferState]] = {
        TransferState.IDLE: {
            TransferEvent.START: TransferState.COMPRESSING,
        },
        TransferState.COMPRESSING: {
            TransferEvent.COMPRESSED: TransferState.ENCRYPTING,
            TransferEvent.FAIL: TransferState.FAILED,
        },
        TransferState.ENCRYPTING: {
            TransferEvent.ENCRYPTED: TransferState.TRANSMITTING,
            TransferEvent.FAIL: TransferState.FAILED,
        },
        TransferState.TRANSMITTING: {
            TransferEvent.DELIVERED: TransferState.RECONSTRUCTING,
            TransferEvent.FAIL: TransferState.FAILED,
        },
        TransferState.RECONSTRUCTING: {
            TransferEvent.RECONSTRUCTED: TransferState.DONE,
            TransferEvent.FAIL: TransferState.FAILED,
        },
        TransferState.DONE: {},
        TransferState.FAILED: {},
    }

    def __init__(self):
        self.state = TransferState.IDLE
        self.history: List[StateTransition] = []

    @property
    def is_terminal(self) -> bool:
        return not self.TRANSITIONS[self.state]

    def fire(self, event: TransferEvent) -> TransferState:
        target = self.TRANSITIONS[self.state].get(event)
        if target is None:
            raise InvalidTransitionError(
                f"Cannot apply '{event.value}' while {self.state.value}"
            )
        self.history.append(StateTransition(self.state, event, target))
        self.state = target
        return target


@dataclass
class TransferResult:
    state: TransferState
    ok: bool = False
    kind: Optional[FailureKind] = None
    message: str = ""
    path: Optional[str] = None
    payload: Optional[EncodedPayload] = None
    wire_fragments: List[str] = field(default_factory=list)
    events: List[Tuple[str, str]] = field(default_factory=list)
    report: Dict[str, Any] = field(default_factory=dict)
    history: List[StateTransition] = field(default_factory=list)


class TransferPipeline:
    """Runs one image through compress, encrypt, transmit, and reconstruct.

    Each run() is an independent transfer with its own state machine. The
    KeyStore may be shared between pipelines; its key is created once.
    """

    def __init__(self, key_store: KeyStore, config: Optional[TransferConfig] = None,
                 channel: Optional[InProcessChannel] = None,
                 on_event: Optional[Callable[[str, str], None]] = None,
                 quiet: bool = False):
        self.key_store = key_store
        self.config = config or TransferConfig()
        self.config.validate()
        self.channel = channel
        self.on_event = on_event
        self.quiet = quiet
        self._cancelled = False
        self._events: List[Tuple[str, str]] = []

    def cancel(self) -> None:
        """Stop the transfer at the next stage boundary."""
        self._cancelled = True

    def _emit(self, direction: str, text: str) -> None:
        self._events.append((direction, text))
        if self.on_event is not None:
            self.on_event(direction, text)
        elif not self.quiet:
            click.echo(f"[{direction}] {text}")

    def _fail(self, machine: TransferStateMachine, result: TransferResult,
              kind: FailureKind, message: str) -> TransferResult:
        machine.fire(TransferEvent.FAIL)
        result.state = machine.state
        result.kind = kind
        result.message = message
        self._emit('received', f"Transfer failed: {message}")
        return result

    def _check_cancelled(self, machine, result) -> Optional[TransferResult]:
        if self._cancelled:
            self._cancelled = False
            return self._fail(machine, result, FailureKind.CANCELLED, "cancelled")
        return None

    def _transmit(self, channel: InProcessChannel, wire: List[str]) -> List[str]:
        received = []
        total = len(wire)

        def receive(messages):
            for message in messages:
                received.append(message)
                self._emit('received', f"Received encrypted chunk {len(received)}/{total}")

        for i, message in enumerate(wire, 1):
            channel.send(message)
            self._emit('sent', f"Sending encrypted chunk {i}/{total}")
            receive(channel.poll())
        receive(channel.flush())
        return received

    def _retransmit(self, channel: InProcessChannel, wire: List[str],
                    received: List[str], key: bytes) -> List[str]:
        for attempt in range(1, self.config.max_retransmits + 1):
            missing = find_missing_indices(received, key, self.config.workers)
            if missing is None:
                missing = list(range(len(wire)))
            if not missing:
                break

            self._emit('received', f"Requesting retransmission of {len(missing)} chunk(s) "
                                   f"(round {attempt}/{self.config.max_retransmits})")
            for index in missing:
                channel.send(wire[index])
                self._emit('sent', f"Resending encrypted chunk {index + 1}/{len(wire)}")
            for message in channel.poll() + channel.flush():
                received.append(message)
                self._emit('received', "Received retransmitted chunk")
        return received

    def run(self, source) -> TransferResult:
        """Transfer one image.

        Args:
            source: Image bytes, path, or binary file object

        Returns:
            TransferResult in state DONE (ok) or FAILED
        """
        config = self.config
        self._events = []
        machine = TransferStateMachine()
        result = TransferResult(state=machine.state, events=self._events,
                                history=machine.history)

        machine.fire(TransferEvent.START)
        compressed = compress_to_target_size(
            source,
            target_bytes=config.target_bytes,
            initial_width=config.initial_width,
            min_width=config.min_width,
            initial_quality=config.initial_quality,
            min_quality=config.min_quality,
            quality_step=config.quality_step,
            width_ratio=config.width_ratio,
            image_format=config.image_format,
            quiet=self.quiet,
        )
        if not compressed.ok:
            return self._fail(machine, result, compressed.kind, compressed.message)

        payload = compressed.value
        result.payload = payload
        cancelled = self._check_cancelled(machine, result)
        if cancelled:
            return cancelled

        machine.fire(TransferEvent.COMPRESSED)
        self._emit('sent', f"Base64 string ready. Size: {len(payload.text)} characters")

        key = self.key_store.get_key()
        chunks = create_sms_chunks(payload.text, config.chunk_size, config.max_sms)
        if config.framed:
            plaintexts = [frame_fragment(i, len(chunks), chunk) for i, chunk in enumerate(chunks)]
        else:
            plaintexts = chunks
        wire = encrypt_fragments(plaintexts, key, config.workers)
        result.wire_fragments = wire
        self._emit('sent', f"Image split into {len(wire)} encrypted chunks.")

        cancelled = self._check_cancelled(machine, result)
        if cancelled:
            return cancelled

        machine.fire(TransferEvent.ENCRYPTED)
        channel = self.channel or InProcessChannel()
        received = self._transmit(channel, wire)
        if config.framed and config.max_retransmits:
            received = self._retransmit(channel, wire, received, key)

        cancelled = self._check_cancelled(machine, result)
        if cancelled:
            return cancelled

        machine.fire(TransferEvent.DELIVERED)
        self._emit('received', "Chunks received. Reconstructing image...")
        outcome = reassemble_fragments(
            received, key, config.resolved_output_dir(),
            extension=config.extension,
            framed=config.framed,
            recovery_mode=config.recovery_mode,
            workers=config.workers,
            quiet=self.quiet,
        )
        result.report = outcome.value or {}
        if not outcome.ok:
            return self._fail(machine, result, outcome.kind, outcome.message)

        machine.fire(TransferEvent.RECONSTRUCTED)
        result.state = machine.state
        result.ok = True
        result.path = outcome.value['path']
        result.kind = compressed.kind
        result.message = compressed.message or "Transfer complete"
        self._emit('received', f"Image reconstructed: {result.path}")
        return result


# ============================================================================
# FRAGMENT FILES
# ============================================================================

def write_fragments_file(path: str, wire_fragments: List[str]) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        for wire in wire_fragments:
            f.write(wire + '\n')


def read_fragments_file(path: str) -> List[str]:
    with open(path, 'r', encoding='utf-8') as f:
        return [line.strip() for line in f if line.strip()]


# ============================================================================
# CLI COMMANDS
# ============================================================================

def budget_options(func):
    """Attach the compression search options shared by send and compress."""
    options = [
        click.option('--target-bytes', type=int, default=DEFAULT_TARGET_BYTES, show_default=True,
                     help='Maximum decoded payload size in bytes'),
        click.option('--initial-width', type=int, default=DEFAULT_INITIAL_WIDTH, show_default=True,
                     help='Starting width in pixels'),
        click.option('--min-width', type=int, default=DEFAULT_MIN_WIDTH, show_default=True,
                     help='Smallest width tried'),
        click.option('--initial-quality', type=float, default=DEFAULT_INITIAL_QUALITY,
                     show_default=True, help='Starting encoder quality (0-1)'),
        click.option('--min-quality', type=float, default=DEFAULT_MIN_QUALITY, show_default=True,
                     help='Lowest encoder quality tried (0-1)'),
        click.option('--quality-step', type=float, default=DEFAULT_QUALITY_STEP, show_default=True,
                     help='Quality decrement per attempt'),
        click.option('--width-ratio', type=float, default=DEFAULT_WIDTH_RATIO, show_default=True,
                     help='Width multiplier per attempt'),
        click.option('--format', 'image_format', type=click.Choice(sorted(IMAGE_EXTENSIONS)),
                     default='JPEG', show_default=True, help='Output image format'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=VERSION)
@click.option('--app-dir', type=click.Path(file_okay=False), default=None,
              help=f'Directory for the key store (default: ${HOME_ENVVAR} or the user app dir)')
@click.pass_context
def cli(ctx, app_dir):
    """SMS Image Relay - send images as encrypted SMS-sized fragments.

    Images are compressed to a byte budget, split into fragments, encrypted
    with AES-256-CBC (fresh IV per fragment), and reassembled at the far end.
    """
    ctx.ensure_object(dict)
    ctx.obj['app_dir'] = app_dir or default_app_dir()


@cli.command()
@click.argument('image', type=click.Path(exists=True, dir_okay=False))
@budget_options
@click.option('--chunk-size', type=int, default=DEFAULT_CHUNK_SIZE, show_default=True,
              help='Base64 characters per fragment')
@click.option('--max-sms', type=int, default=DEFAULT_MAX_SMS, show_default=True,
              help='Warn when the fragment count exceeds this')
@click.option('--unframed', is_flag=True,
              help='Omit index/total frames (receiver trusts delivery order)')
@click.option('--max-retransmits', type=int, default=0, show_default=True,
              help='Rounds of retransmission requests for missing fragments')
@click.option('--workers', type=int, default=1, show_default=True,
              help='Threads for fragment encryption/decryption')
@click.option('--recovery-mode', is_flag=True,
              help='Write a best-effort image even if fragments are missing')
@click.option('--output-dir', type=click.Path(file_okay=False), default=None,
              help='Directory for the reconstructed image')
@click.option('--fragments-out', type=click.Path(dir_okay=False), default=None,
              help='Also save the wire fragments, one per line')
@click.option('--drop', type=int, multiple=True,
              help='Simulate loss of the fragment sent at this 0-based position (repeatable)')
@click.option('--reorder', is_flag=True, help='Simulate out-of-order delivery')
@click.option('--seed', type=int, default=None, help='Seed for --reorder')
@click.pass_context
def send(ctx, image, target_bytes, initial_width, min_width, initial_quality, min_quality,
         quality_step, width_ratio, image_format, chunk_size, max_sms, unframed,
         max_retransmits, workers, recovery_mode, output_dir, fragments_out,
         drop, reorder, seed):
    """Run a full simulated transfer of IMAGE.

    Example:
        sms-image-relay send photo.jpg --output-dir ./inbox
        sms-image-relay send photo.jpg --drop 3 --max-retransmits 1
    """
    try:
        app_dir = ctx.obj['app_dir']
        config = TransferConfig(
            target_bytes=target_bytes,
            initial_width=initial_width,
            min_width=min_width,
            initial_quality=initial_quality,
            min_quality=min_quality,
            quality_step=quality_step,
            width_ratio=width_ratio,
            chunk_size=chunk_size,
            max_sms=max_sms,
            image_format=image_format,
            framed=not unframed,
            recovery_mode=recovery_mode,
            max_retransmits=max_retransmits,
            workers=workers,
            output_dir=output_dir or os.path.join(app_dir, 'reconstructed'),
        )
        key_store = KeyStore.open_default(app_dir)
        channel = InProcessChannel(drop=drop, reorder=reorder, seed=seed)

        click.echo(f"\nSending: {image}")
        pipeline = TransferPipeline(key_store, config, channel=channel)
        result = pipeline.run(image)

        if fragments_out and result.wire_fragments:
            write_fragments_file(fragments_out, result.wire_fragments)
            click.echo(f"Wire fragments: {fragments_out}")

        if not result.ok:
            click.echo(f"\nError ({result.kind.value}): {result.message}", err=True)
            sys.exit(1)

        payload = result.payload
        click.echo(f"\nOutput: {result.path}")
        click.echo(f"Payload: {len(payload.text):,} base64 chars, "
                   f"~{payload.estimated_size:,.0f} bytes "
                   f"(width={payload.width}, quality={payload.quality})")
        click.echo(f"Fragments: {len(result.wire_fragments)} sent, "
                   f"{result.report['fragments_used']} used")
        click.echo(f"SHA-256: {result.report['sha256']}")
        if result.kind == FailureKind.BUDGET_UNREACHABLE and not payload.within_budget:
            click.echo(f"Warning: {result.message}", err=True)
        if result.report.get('missing'):
            click.echo(f"Warning: Missing fragments {result.report['missing']}", err=True)
        if key_store.ephemeral:
            click.echo("Warning: key was not persisted; saved fragments cannot be "
                       "decrypted by a later run", err=True)

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('fragments_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--output-dir', type=click.Path(file_okay=False), default=None,
              help='Directory for the reconstructed image')
@click.option('--ext', type=click.Choice(sorted(IMAGE_EXTENSIONS.values())), default='jpg',
              show_default=True, help='Extension of the reconstructed image')
@click.option('--unframed', is_flag=True,
              help='Fragments carry no index/total frames; trust file order')
@click.option('--recovery-mode', is_flag=True,
              help='Write a best-effort image even if fragments are missing')
@click.pass_context
def reconstruct(ctx, fragments_file, output_dir, ext, unframed, recovery_mode):
    """Rebuild an image from a file of wire fragments.

    Example:
        sms-image-relay reconstruct photo.sms --output-dir ./inbox
    """
    try:
        app_dir = ctx.obj['app_dir']
        key_store = KeyStore.open_default(app_dir)
        wire_fragments = read_fragments_file(fragments_file)
        click.echo(f"\nReassembling {len(wire_fragments)} fragment(s) from {fragments_file}")

        outcome = reassemble_fragments(
            wire_fragments, key_store.get_key(),
            output_dir or os.path.join(app_dir, 'reconstructed'),
            extension=ext, framed=not unframed, recovery_mode=recovery_mode,
        )
        if not outcome.ok:
            click.echo(f"\nError ({outcome.kind.value}): {outcome.message}", err=True)
            if outcome.kind == FailureKind.MISSING_FRAGMENTS:
                click.echo("Use --recovery-mode to attempt partial recovery", err=True)
            sys.exit(1)

        report = outcome.value
        click.echo(f"\nRecovered: {report['path']} ({report['bytes_written']:,} bytes)")
        click.echo(f"Fragments used: {report['fragments_used']}/{report['fragments_received']}")
        if report['dropped']:
            click.echo(f"Warning: Dropped {len(report['dropped'])} corrupt fragment(s)", err=True)
        if report['missing']:
            click.echo(f"Warning: Missing fragments {report['missing']}", err=True)

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('image', type=click.Path(exists=True, dir_okay=False))
@budget_options
@click.option('-o', '--output', type=click.Path(dir_okay=False), default=None,
              help='Write the base64 payload here instead of stdout')
def compress(image, target_bytes, initial_width, min_width, initial_quality, min_quality,
             quality_step, width_ratio, image_format, output):
    """Compress IMAGE to the byte budget and print its base64 payload.

    Example:
        sms-image-relay compress photo.jpg -o payload.txt
    """
    try:
        outcome = compress_to_target_size(
            image, target_bytes, initial_width, min_width, initial_quality,
            min_quality, quality_step, width_ratio, image_format,
            quiet=output is None,
        )
        if not outcome.ok:
            click.echo(f"\nError: {outcome.message}", err=True)
            sys.exit(1)

        payload = outcome.value
        if output is None:
            click.echo(payload.text)
            return

        with open(output, 'w', encoding='ascii') as f:
            f.write(payload.text)
        click.echo(f"\nOutput: {output}")
        click.echo(f"Base64 length: {len(payload.text):,} (~{payload.estimated_size:,.0f} bytes)")

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command('decode-base64')
@click.argument('input_file', type=click.File('r'))
@click.option('--output-dir', type=click.Path(file_okay=False), default=None,
              help='Directory for the reconstructed image')
@click.option('--ext', type=click.Choice(sorted(IMAGE_EXTENSIONS.values())), default='jpg',
              show_default=True, help='Extension of the reconstructed image')
@click.pass_context
def decode_base64(ctx, input_file, output_dir, ext):
    """Write an image from a pasted base64 payload ('-' reads stdin).

    Example:
        sms-image-relay decode-base64 payload.txt --output-dir ./inbox
    """
    try:
        text = ''.join(input_file.read().split())
        if not text:
            click.echo("Error: Please provide a non-empty base64 string", err=True)
            sys.exit(1)
        try:
            data = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            click.echo(f"Error: Invalid base64 input: {e}", err=True)
            sys.exit(1)

        path = write_reconstructed_file(
            data, output_dir or os.path.join(ctx.obj['app_dir'], 'reconstructed'), ext)
        click.echo(f"Reconstructed: {path} ({len(data):,} bytes)")

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def info(ctx):
    """Show the key fingerprint, key store location, and defaults."""
    try:
        app_dir = ctx.obj['app_dir']
        key_store = KeyStore.open_default(app_dir)
        fingerprint = key_store.fingerprint()

        click.echo(f"\n{'='*60}")
        click.echo("SMS IMAGE RELAY")
        click.echo(f"{'='*60}")
        click.echo(f"Version:             {VERSION}")
        click.echo(f"Key Store:           {key_store.store.path}")
        click.echo(f"Key Fingerprint:     {fingerprint}")
        click.echo(f"Key Persisted:       {'No (ephemeral)' if key_store.ephemeral else 'Yes'}")
        click.echo(f"Cipher:              AES-256-CBC, PKCS#7, fresh IV per fragment")
        click.echo(f"Target Budget:       {DEFAULT_TARGET_BYTES:,} bytes")
        click.echo(f"Width Range:         {DEFAULT_INITIAL_WIDTH} -> {DEFAULT_MIN_WIDTH} px")
        click.echo(f"Quality Range:       {DEFAULT_INITIAL_QUALITY} -> {DEFAULT_MIN_QUALITY}")
        click.echo(f"Fragment Size:       {DEFAULT_CHUNK_SIZE} chars (advisory max {DEFAULT_MAX_SMS})")
        click.echo(f"{'='*60}\n")

    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


if __name__ == '__main__':
    cli()
