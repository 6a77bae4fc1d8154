#!/usr/bin/env python3
"""
Paper Age - Passphrase-encrypted paper backups of small secrets

This tool encrypts a secret (a recovery key, a seed phrase, a short file) with a
passphrase and renders the ciphertext as a single QR code on a printable PDF page.
The page can later be scanned and decrypted with nothing but the passphrase.

REQUIREMENTS:
  Python 3.8+

  Install with:
    pip install .

  System dependencies (only needed for decrypting scans):
    - zbar (for pyzbar):    sudo apt-get install libzbar0  /  brew install zbar
    - poppler (for PDFs):   sudo apt-get install poppler-utils  /  brew install poppler

USAGE:
  Create a backup page:
    paper-age encode secret.txt -o backup.pdf --title "Recovery key"

  Decrypt a scan (PDF or image) or the text a QR scanner app produced:
    paper-age decrypt scan.pdf -o secret.txt

  Show the parameters stored in a backup page:
    paper-age info backup.pdf
"""

import base64
import binascii
import enum
import hashlib
import hmac
import io
import os
import struct
import sys
from dataclasses import dataclass
from typing import BinaryIO, Dict, List, Optional, Tuple, Union

import click
import qrcode
import qrcode.util
from qrcode.constants import ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q, ERROR_CORRECT_H
from qrcode.exceptions import DataOverflowError
from PIL import Image, ImageDraw
from reportlab.lib.pagesizes import A4, LETTER, LEGAL
from reportlab.lib.units import mm
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas as pdf_canvas
from argon2 import low_level as argon2_low_level
from argon2.exceptions import HashingError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
import numpy as np

# Version and format constants
VERSION = "1.0.0"
FORMAT_VERSION = 1

DEFAULT_TITLE = "Paper Age"
DEFAULT_NOTES_LABEL = "Passphrase:"
MAX_TITLE_LENGTH = 64

# Envelope constants
MAGIC = b"PAGE"
SALT_SIZE = 16
KEY_SIZE = 32
TAG_SIZE = 16
MAC_SIZE = 32
CHUNK_SIZE = 64 * 1024
MAX_CHUNK_SIZE = 1024 * 1024
HEADER_INFO = b"paper-age header"
PAYLOAD_INFO = b"paper-age payload"

# [magic:4][version:1][kdf:1][cipher:1][time:4][memory:4][parallelism:1][chunk:4][salt:16]
_HEADER_FIELDS = struct.Struct(">4sBBBIIBI16s")
HEADER_SIZE = _HEADER_FIELDS.size + MAC_SIZE

ARMOR_BEGIN = "-----BEGIN PAPER AGE ENCRYPTED FILE-----"
ARMOR_END = "-----END PAPER AGE ENCRYPTED FILE-----"
ARMOR_LINE_LENGTH = 64

# Layout constants (millimeters)
QUIET_ZONE_MODULES = 4
MIN_MODULE_SIZE_MM = 0.8
MAX_MODULE_SIZE_MM = 2.0
TITLE_HEIGHT_MM = 20.0
NOTES_HEIGHT_MM = 22.0
FOOTER_HEIGHT_MM = 12.0
DEBUG_GRID_SPACING_MM = 10.0


# ============================================================================
# ERRORS
# ============================================================================

class PaperAgeError(Exception):
    """Base class for every error raised by paper_age."""

    prefix = ""

    def __str__(self) -> str:
        message = super().__str__()
        return f"{self.prefix}{message}" if self.prefix else message


class EncryptionError(PaperAgeError):
    """The plaintext could not be read or encrypted."""

    prefix = "Encryption failed: "


class DocumentInitError(PaperAgeError):
    """The page size or document metadata is invalid."""

    prefix = "Document initialization failed: "


class PdfCreationError(PaperAgeError):
    """The PDF could not be laid out or serialized (e.g. QR code too large)."""

    prefix = "PDF creation failed: "


class AuthenticationError(PaperAgeError):
    """An envelope failed to parse or authenticate during decryption."""


class DecodeError(PaperAgeError):
    """No readable QR code or armored envelope was found in the input."""


class LayoutError(PaperAgeError):
    """The symbol cannot be placed on the page at a scannable module size."""


class CapacityExceeded(PaperAgeError):
    """The payload does not fit the largest QR code version."""

    def __init__(self, payload_len: int, max_capacity: int,
                 error_correction: Optional['ErrorCorrection'] = None):
        self.payload_len = payload_len
        self.max_capacity = max_capacity
        self.error_correction = error_correction
        level = f" at error correction {error_correction.value}" if error_correction else ""
        super().__init__(
            f"payload of {payload_len:,} bytes exceeds the maximum QR code "
            f"capacity of {max_capacity:,} bytes{level}"
        )


class UnknownPageSize(ValueError):
    """Raised for a page size identifier that has no geometry entry."""


# ============================================================================
# PAGE GEOMETRY
# ============================================================================

class PageSize(enum.Enum):
    A4 = "a4"
    LETTER = "letter"
    LEGAL = "legal"


@dataclass(frozen=True)
class PageGeometry:
    """Physical page dimensions and default margin, in millimeters."""

    width_mm: float
    height_mm: float
    margin_mm: float


PAGE_GEOMETRY: Dict[PageSize, PageGeometry] = {
    PageSize.A4: PageGeometry(A4[0] / mm, A4[1] / mm, 15.0),
    PageSize.LETTER: PageGeometry(LETTER[0] / mm, LETTER[1] / mm, 15.0),
    PageSize.LEGAL: PageGeometry(LEGAL[0] / mm, LEGAL[1] / mm, 15.0),
}

DEFAULT_PAGE_SIZE = PageSize.A4


def resolve_page_size(identifier: Union[PageSize, str]) -> PageSize:
    """Resolve a PageSize or a case-insensitive name such as 'letter'.

    Raises:
        UnknownPageSize: If the identifier names no supported page size
    """
    if isinstance(identifier, PageSize):
        return identifier
    if isinstance(identifier, str):
        try:
            return PageSize(identifier.strip().lower())
        except ValueError:
            pass
    supported = ", ".join(p.value for p in PageSize)
    raise UnknownPageSize(f"Unknown page size {identifier!r} (supported: {supported})")


def get_page_geometry(identifier: Union[PageSize, str]) -> PageGeometry:
    """Look up the geometry for a page size identifier."""
    return PAGE_GEOMETRY[resolve_page_size(identifier)]


# ============================================================================
# ENCRYPTION FUNCTIONS (Argon2id + chunked ChaCha20-Poly1305 / AES-256-GCM)
# ============================================================================

class Kdf(enum.Enum):
    ARGON2ID = 1


class Cipher(enum.Enum):
    CHACHA20_POLY1305 = 1
    AES_256_GCM = 2


_AEAD_CLASSES = {
    Cipher.CHACHA20_POLY1305: ChaCha20Poly1305,
    Cipher.AES_256_GCM: AESGCM,
}


@dataclass(frozen=True)
class KdfParams:
    """Argon2id work factor.

    Attributes:
        time_cost: Number of iterations
        memory_cost: Memory in KiB
        parallelism: Number of lanes
    """

    time_cost: int
    memory_cost: int
    parallelism: int

    def exceeds(self, limit: 'KdfParams') -> bool:
        return (self.time_cost > limit.time_cost
                or self.memory_cost > limit.memory_cost
                or self.parallelism > limit.parallelism)


# 64 MiB, 3 passes: about a quarter of a second on a laptop
DEFAULT_KDF_PARAMS = KdfParams(time_cost=3, memory_cost=65536, parallelism=4)

# Decryption refuses headers asking for more than this (1 GiB, 16 passes)
DEFAULT_MAX_KDF_PARAMS = KdfParams(time_cost=16, memory_cost=1048576, parallelism=16)


@dataclass(frozen=True)
class EnvelopeHeader:
    """Parsed (not yet authenticated) envelope header."""

    format_version: int
    kdf: Kdf
    cipher: Cipher
    params: KdfParams
    chunk_size: int
    salt: bytes
    mac: bytes
    authenticated_bytes: bytes


class SecretBuffer:
    """Mutable buffer for key material that is zeroed when the block exits.

    Usage:
        with SecretBuffer(passphrase.encode('utf-8')) as secret:
            ...

    The wipe runs on every exit path, including exceptions. Immutable bytes
    objects handed to third-party APIs are outside its reach.
    """

    def __init__(self, data: Union[bytes, bytearray] = b""):
        self._buffer = bytearray(data)

    def __enter__(self) -> bytearray:
        return self._buffer

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.wipe()
        return False

    def wipe(self) -> None:
        self._buffer[:] = bytes(len(self._buffer))

    @property
    def is_wiped(self) -> bool:
        return not any(self._buffer)


def _passphrase_bytes(passphrase: Union[str, bytes, bytearray]) -> bytes:
    if isinstance(passphrase, str):
        return passphrase.encode('utf-8')
    if isinstance(passphrase, (bytes, bytearray)):
        return bytes(passphrase)
    raise TypeError("passphrase must be str or bytes")


def derive_key(secret: Union[bytes, bytearray], salt: bytes, params: KdfParams) -> bytes:
    """Derive a 32-byte master key from a passphrase using Argon2id.

    Args:
        secret: Passphrase bytes
        salt: 16-byte random salt
        params: Argon2id work factor

    Returns:
        32-byte derived key

    Raises:
        argon2.exceptions.HashingError: If Argon2 rejects the parameters
    """
    # argon2-cffi copies the secret into its own C buffer
    return argon2_low_level.hash_secret_raw(
        secret=bytes(secret),
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=KEY_SIZE,
        type=argon2_low_level.Type.ID,
    )


def expand_key(master_key: Union[bytes, bytearray], info: bytes) -> bytes:
    """Derive a purpose-bound subkey from the master key with HKDF-SHA256."""
    hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=None, info=info)
    return hkdf.derive(bytes(master_key))


def header_mac(mac_key: Union[bytes, bytearray], header_fields: bytes) -> bytes:
    return hmac.new(bytes(mac_key), header_fields, hashlib.sha256).digest()


def chunk_nonce(counter: int, last: bool) -> bytes:
    """STREAM nonce: 11-byte big-endian chunk counter followed by the last-chunk flag."""
    return counter.to_bytes(11, byteorder='big') + (b'\x01' if last else b'\x00')


def split_chunks(plaintext: bytes, chunk_size: int) -> List[bytes]:
    """Split plaintext into chunk_size pieces.

    An empty plaintext yields one empty chunk; otherwise the last chunk is
    never empty.
    """
    if not plaintext:
        return [b""]
    return [plaintext[i:i + chunk_size] for i in range(0, len(plaintext), chunk_size)]


def envelope_length(plaintext_len: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Exact envelope size for a plaintext of the given length."""
    num_chunks = max(1, -(-plaintext_len // chunk_size))
    return HEADER_SIZE + plaintext_len + num_chunks * TAG_SIZE


def encrypt_plaintext(stream: BinaryIO, passphrase: Union[str, bytes],
                      params: KdfParams = DEFAULT_KDF_PARAMS,
                      chunk_size: int = CHUNK_SIZE,
                      cipher: Cipher = Cipher.CHACHA20_POLY1305) -> Tuple[int, bytes]:
    """Read a plaintext stream to exhaustion and encrypt it under a passphrase.

    The key is derived with Argon2id from the passphrase and a fresh random
    salt. HKDF expands it into a header MAC key and a payload key. The payload
    is sealed chunk by chunk (STREAM construction), so reordering, truncating
    or extending the chunk sequence is detected on decryption.

    Args:
        stream: Binary stream with the plaintext
        passphrase: Passphrase (str is encoded as UTF-8)
        params: Argon2id work factor stored in the header
        chunk_size: Plaintext bytes per authenticated chunk
        cipher: AEAD used for the chunks

    Returns:
        Tuple of (plaintext_length, envelope_bytes)

    Raises:
        EncryptionError: If the stream cannot be read or the primitives
            reject the parameters
    """
    try:
        plaintext = stream.read()
    except OSError as e:
        raise EncryptionError(f"could not read plaintext: {e}") from e

    if not isinstance(plaintext, (bytes, bytearray)):
        raise EncryptionError("plaintext stream must be opened in binary mode")
    if not 0 < chunk_size <= MAX_CHUNK_SIZE:
        raise EncryptionError(f"chunk size must be between 1 and {MAX_CHUNK_SIZE} bytes")

    try:
        passphrase_bytes = _passphrase_bytes(passphrase)
    except TypeError as e:
        raise EncryptionError(str(e)) from e

    salt = os.urandom(SALT_SIZE)
    try:
        header_fields = _HEADER_FIELDS.pack(
            MAGIC, FORMAT_VERSION, Kdf.ARGON2ID.value, cipher.value,
            params.time_cost, params.memory_cost, params.parallelism,
            chunk_size, salt,
        )
    except struct.error as e:
        raise EncryptionError(f"invalid key derivation parameters: {e}") from e

    try:
        with SecretBuffer(passphrase_bytes) as secret, \
                SecretBuffer(derive_key(secret, salt, params)) as master_key, \
                SecretBuffer(expand_key(master_key, HEADER_INFO)) as mac_key, \
                SecretBuffer(expand_key(master_key, PAYLOAD_INFO)) as payload_key:
            aead = _AEAD_CLASSES[cipher](bytes(payload_key))
            chunks = split_chunks(bytes(plaintext), chunk_size)
            sealed = [
                aead.encrypt(chunk_nonce(counter, counter == len(chunks) - 1), chunk, None)
                for counter, chunk in enumerate(chunks)
            ]
            envelope = header_fields + header_mac(mac_key, header_fields) + b"".join(sealed)
    except (HashingError, OverflowError, ValueError) as e:
        raise EncryptionError(f"cryptographic primitive rejected parameters: {e}") from e

    return len(plaintext), envelope


def parse_header(envelope: bytes) -> EnvelopeHeader:
    """Parse the envelope header without authenticating it.

    Raises:
        AuthenticationError: If the header is truncated or names an unknown
            format version, KDF or cipher
    """
    if len(envelope) < HEADER_SIZE:
        raise AuthenticationError("envelope is shorter than its header")

    fields = envelope[:_HEADER_FIELDS.size]
    (magic, version, kdf_id, cipher_id, time_cost, memory_cost,
     parallelism, chunk_size, salt) = _HEADER_FIELDS.unpack(fields)

    if magic != MAGIC:
        raise AuthenticationError("not a paper-age envelope")
    if version != FORMAT_VERSION:
        raise AuthenticationError(f"unsupported envelope version {version}")
    try:
        kdf = Kdf(kdf_id)
        cipher = Cipher(cipher_id)
    except ValueError as e:
        raise AuthenticationError(f"unsupported envelope algorithm: {e}") from e

    return EnvelopeHeader(
        format_version=version,
        kdf=kdf,
        cipher=cipher,
        params=KdfParams(time_cost, memory_cost, parallelism),
        chunk_size=chunk_size,
        salt=salt,
        mac=envelope[_HEADER_FIELDS.size:HEADER_SIZE],
        authenticated_bytes=fields,
    )


def decrypt_envelope(envelope: bytes, passphrase: Union[str, bytes],
                     max_params: KdfParams = DEFAULT_MAX_KDF_PARAMS) -> bytes:
    """Authenticate and decrypt an envelope produced by encrypt_plaintext.

    The header MAC is checked first (this is also the passphrase check), then
    every chunk in order. Plaintext is only returned once the whole envelope
    has authenticated.

    Args:
        envelope: Envelope bytes
        passphrase: Passphrase used for encryption
        max_params: Refuse headers whose work factor exceeds this

    Returns:
        Decrypted plaintext

    Raises:
        AuthenticationError: On a wrong passphrase or any corruption
    """
    header = parse_header(envelope)

    if header.params.exceeds(max_params):
        raise AuthenticationError(
            f"key derivation parameters {header.params} exceed the allowed maximum"
        )
    if not 0 < header.chunk_size <= MAX_CHUNK_SIZE:
        raise AuthenticationError(f"invalid chunk size {header.chunk_size}")

    body = envelope[HEADER_SIZE:]
    sealed_size = header.chunk_size + TAG_SIZE

    try:
        passphrase_bytes = _passphrase_bytes(passphrase)
    except TypeError as e:
        raise AuthenticationError(str(e)) from e

    try:
        with SecretBuffer(passphrase_bytes) as secret, \
                SecretBuffer(derive_key(secret, header.salt, header.params)) as master_key, \
                SecretBuffer(expand_key(master_key, HEADER_INFO)) as mac_key, \
                SecretBuffer(expand_key(master_key, PAYLOAD_INFO)) as payload_key:
            expected = header_mac(mac_key, header.authenticated_bytes)
            if not hmac.compare_digest(expected, header.mac):
                raise AuthenticationError("incorrect passphrase or corrupted header")

            aead = _AEAD_CLASSES[header.cipher](bytes(payload_key))
            plaintext_chunks = []
            offset = 0
            counter = 0
            while True:
                remaining = len(body) - offset
                last = remaining <= sealed_size
                if remaining < TAG_SIZE or (last and counter > 0 and remaining == TAG_SIZE):
                    raise AuthenticationError("envelope is truncated")
                sealed = body[offset:offset + (remaining if last else sealed_size)]
                plaintext_chunks.append(aead.decrypt(chunk_nonce(counter, last), sealed, None))
                offset += len(sealed)
                counter += 1
                if last:
                    break
    except InvalidTag as e:
        raise AuthenticationError(f"chunk {counter} failed authentication") from e
    except (HashingError, OverflowError, ValueError) as e:
        raise AuthenticationError(f"invalid key derivation parameters: {e}") from e

    return b"".join(plaintext_chunks)


# ============================================================================
# ASCII ARMOR
# ============================================================================

def armor(envelope: bytes) -> bytes:
    """Wrap an envelope in base64 lines between BEGIN/END markers.

    QR scanners decode byte-mode symbols as text; armored ASCII survives that
    where raw ciphertext does not.
    """
    encoded = base64.b64encode(envelope).decode('ascii')
    lines = [ARMOR_BEGIN]
    lines.extend(encoded[i:i + ARMOR_LINE_LENGTH]
                 for i in range(0, len(encoded), ARMOR_LINE_LENGTH))
    lines.append(ARMOR_END)
    return ("\n".join(lines) + "\n").encode('ascii')


def dearmor(text: Union[str, bytes]) -> bytes:
    """Recover envelope bytes from armored text.

    Raises:
        DecodeError: If the markers are missing or the body is not base64
    """
    if isinstance(text, bytes):
        try:
            text = text.decode('ascii')
        except UnicodeDecodeError as e:
            raise DecodeError("armored text must be ASCII") from e

    lines = [line.strip() for line in text.strip().splitlines()]
    if len(lines) < 2 or lines[0] != ARMOR_BEGIN or lines[-1] != ARMOR_END:
        raise DecodeError("missing armor BEGIN/END markers")

    try:
        return base64.b64decode("".join(lines[1:-1]), validate=True)
    except binascii.Error as e:
        raise DecodeError(f"invalid base64 in armored body: {e}") from e


# ============================================================================
# QR SYMBOL ENCODING
# ============================================================================

class ErrorCorrection(enum.Enum):
    L = "L"  # ~7% error correction
    M = "M"  # ~15% error correction (default)
    Q = "Q"  # ~25% error correction
    H = "H"  # ~30% error correction


ERROR_CORRECTION_LEVELS = {
    ErrorCorrection.L: ERROR_CORRECT_L,
    ErrorCorrection.M: ERROR_CORRECT_M,
    ErrorCorrection.Q: ERROR_CORRECT_Q,
    ErrorCorrection.H: ERROR_CORRECT_H,
}

DEFAULT_ERROR_CORRECTION = ErrorCorrection.M

# Byte-mode capacity for versions 1-40, mode indicator and length prefix
# already subtracted. Index 0 is version 1.
QR_BYTE_CAPACITY: Dict[ErrorCorrection, Tuple[int, ...]] = {
    ErrorCorrection.L: (
        17, 32, 53, 78, 106, 134, 154, 192, 230, 271,
        321, 367, 425, 458, 520, 586, 644, 718, 792, 858,
        929, 1003, 1091, 1171, 1273, 1367, 1465, 1528, 1628, 1732,
        1840, 1952, 2068, 2188, 2303, 2431, 2563, 2699, 2809, 2953,
    ),
    ErrorCorrection.M: (
        14, 26, 42, 62, 84, 106, 122, 152, 180, 213,
        251, 287, 331, 362, 412, 450, 504, 560, 624, 666,
        711, 779, 857, 911, 997, 1059, 1125, 1190, 1264, 1370,
        1452, 1538, 1628, 1722, 1809, 1911, 1989, 2099, 2213, 2331,
    ),
    ErrorCorrection.Q: (
        11, 20, 32, 46, 60, 74, 86, 108, 130, 151,
        177, 203, 241, 258, 292, 322, 364, 394, 442, 482,
        509, 565, 611, 661, 715, 751, 805, 868, 908, 982,
        1030, 1112, 1168, 1228, 1283, 1351, 1423, 1499, 1579, 1663,
    ),
    ErrorCorrection.H: (
        7, 14, 24, 34, 44, 58, 64, 84, 98, 119,
        137, 155, 177, 194, 220, 250, 280, 310, 338, 382,
        403, 439, 461, 511, 535, 593, 625, 658, 698, 742,
        790, 842, 898, 958, 983, 1051, 1093, 1139, 1219, 1273,
    ),
}

MAX_QR_VERSION = 40


@dataclass(frozen=True)
class SymbolSpec:
    version: int
    error_correction: ErrorCorrection
    capacity: int

    @property
    def modules(self) -> int:
        return get_qr_modules(self.version)


@dataclass(frozen=True)
class ModuleGrid:
    """Dark/light module matrix of a QR symbol, without its quiet zone."""

    spec: SymbolSpec
    modules: Tuple[Tuple[bool, ...], ...]

    @property
    def size(self) -> int:
        return len(self.modules)


def get_qr_modules(qr_version: int) -> int:
    """Get the number of modules per side for a QR code version.

    Args:
        qr_version: QR code version (1-40)

    Returns:
        Number of modules per side
    """
    # QR code formula: modules = 4 * version + 17
    return 4 * qr_version + 17


def get_qr_capacity(qr_version: int, error_correction: ErrorCorrection) -> int:
    """Byte-mode capacity of a QR code version at an error correction level."""
    return QR_BYTE_CAPACITY[error_correction][qr_version - 1]


def select_qr_version(payload_len: int,
                      error_correction: ErrorCorrection = DEFAULT_ERROR_CORRECTION) -> SymbolSpec:
    """Find the smallest QR version whose byte capacity holds the payload.

    Raises:
        CapacityExceeded: If even version 40 is too small
    """
    capacities = QR_BYTE_CAPACITY[error_correction]
    for version, capacity in enumerate(capacities, start=1):
        if capacity >= payload_len:
            return SymbolSpec(version, error_correction, capacity)
    raise CapacityExceeded(payload_len, capacities[-1], error_correction)


def encode_symbol(payload: bytes,
                  error_correction: ErrorCorrection = DEFAULT_ERROR_CORRECTION) -> ModuleGrid:
    """Encode a payload as a byte-mode QR symbol of the smallest fitting version.

    Args:
        payload: Bytes to encode
        error_correction: Error correction level (never downgraded)

    Returns:
        ModuleGrid of the symbol

    Raises:
        CapacityExceeded: If the payload does not fit any version
    """
    spec = select_qr_version(len(payload), error_correction)

    qr = qrcode.QRCode(
        version=spec.version,
        error_correction=ERROR_CORRECTION_LEVELS[error_correction],
    )
    # A single 8-bit segment: no mode optimization on opaque data
    qr.add_data(qrcode.util.QRData(bytes(payload), mode=qrcode.util.MODE_8BIT_BYTE))
    try:
        qr.make(fit=False)
    except DataOverflowError as e:
        raise CapacityExceeded(len(payload), spec.capacity, error_correction) from e

    modules = tuple(tuple(bool(cell) for cell in row) for row in qr.modules)
    return ModuleGrid(spec=spec, modules=modules)


def render_grid_image(grid: ModuleGrid, box_size: int = 10,
                      quiet_zone: int = QUIET_ZONE_MODULES) -> Image.Image:
    """Rasterize a module grid (with quiet zone) to a grayscale PIL image."""
    side = (grid.size + 2 * quiet_zone) * box_size
    img = Image.new('L', (side, side), 255)
    draw = ImageDraw.Draw(img)
    for row_idx, row in enumerate(grid.modules):
        for col_idx, dark in enumerate(row):
            if dark:
                x = (col_idx + quiet_zone) * box_size
                y = (row_idx + quiet_zone) * box_size
                draw.rectangle([x, y, x + box_size - 1, y + box_size - 1], fill=0)
    return img


# ============================================================================
# DOCUMENT SYNTHESIS
# ============================================================================

@dataclass(frozen=True)
class PageLayout:
    """Positions on the page, in PDF points (origin bottom-left)."""

    page_width: float
    page_height: float
    margin: float
    title_y: float
    symbol_x: float
    symbol_y: float
    module_size: float
    quiet_zone: float
    symbol_extent: float
    notes_y: Optional[float]
    footer_y: float


def compute_layout(geometry: PageGeometry, symbol_modules: int,
                   skip_notes_line: bool = False,
                   min_module_size_mm: float = MIN_MODULE_SIZE_MM,
                   max_module_size_mm: float = MAX_MODULE_SIZE_MM) -> PageLayout:
    """Fit a symbol of symbol_modules per side onto the page.

    The title sits at the top, the notes line (unless skipped) and the footer
    at the bottom. The symbol plus its quiet zone takes the largest square
    that fits between them, centered horizontally.

    Raises:
        LayoutError: If the resulting module size is below min_module_size_mm
    """
    page_width = geometry.width_mm * mm
    page_height = geometry.height_mm * mm
    margin = geometry.margin_mm * mm

    top = page_height - margin - TITLE_HEIGHT_MM * mm
    bottom = margin + FOOTER_HEIGHT_MM * mm
    if not skip_notes_line:
        bottom += NOTES_HEIGHT_MM * mm

    box_width = page_width - 2 * margin
    box_height = top - bottom
    total_modules = symbol_modules + 2 * QUIET_ZONE_MODULES

    module_size = min(box_width, box_height, max_module_size_mm * mm * total_modules) / total_modules
    if module_size < min_module_size_mm * mm:
        raise LayoutError(
            f"QR code of {symbol_modules} modules needs {total_modules * min_module_size_mm:.1f}mm "
            f"but only {min(box_width, box_height) / mm:.1f}mm is available "
            f"(module size {module_size / mm:.2f}mm is below the {min_module_size_mm}mm minimum)"
        )

    extent = module_size * total_modules
    symbol_x = (page_width - extent) / 2
    symbol_y = top - extent

    return PageLayout(
        page_width=page_width,
        page_height=page_height,
        margin=margin,
        title_y=page_height - margin - 10 * mm,
        symbol_x=symbol_x,
        symbol_y=symbol_y,
        module_size=module_size,
        quiet_zone=QUIET_ZONE_MODULES * module_size,
        symbol_extent=extent,
        notes_y=None if skip_notes_line else symbol_y - 14 * mm,
        footer_y=margin + 4 * mm,
    )


def validate_title(title: str) -> str:
    """Check that a title can be drawn with the standard PDF fonts.

    Raises:
        ValueError: If the title is empty, too long or not encodable
    """
    if not isinstance(title, str) or not title.strip():
        raise ValueError("title must be a non-empty string")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValueError(f"title must be {MAX_TITLE_LENGTH} characters or less")
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in title):
        raise ValueError("title must not contain control characters")
    try:
        title.encode('cp1252')
    except UnicodeEncodeError as e:
        raise ValueError(f"title contains characters the PDF standard fonts cannot show: {e.object[e.start:e.end]!r}") from e
    return title


class Document:
    """A single-page paper backup document.

    Construction validates everything that does not depend on the secret, so
    it can run before any encryption work.
    """

    def __init__(self, title: str, page_size: Union[PageSize, str] = DEFAULT_PAGE_SIZE,
                 error_correction: ErrorCorrection = DEFAULT_ERROR_CORRECTION,
                 min_module_size_mm: float = MIN_MODULE_SIZE_MM,
                 armor: bool = True):
        try:
            self.page_size = resolve_page_size(page_size)
            self.title = validate_title(title)
        except ValueError as e:
            raise DocumentInitError(str(e)) from e
        if not isinstance(error_correction, ErrorCorrection):
            raise DocumentInitError(f"unknown error correction level {error_correction!r}")

        self.geometry = PAGE_GEOMETRY[self.page_size]
        self.error_correction = error_correction
        self.min_module_size_mm = min_module_size_mm
        self.armor = armor

    def symbol_payload(self, encrypted: bytes) -> bytes:
        return armor(encrypted) if self.armor else bytes(encrypted)

    def create_pdf(self, grid: bool, notes_label: str, skip_notes_line: bool,
                   encrypted: bytes) -> bytes:
        """Render the page and return the PDF bytes.

        Args:
            grid: Draw a 10mm debug grid behind the page content
            notes_label: Label in front of the handwritten-notes line
            skip_notes_line: Omit the notes line entirely
            encrypted: Envelope from encrypt_plaintext

        Returns:
            PDF file contents

        Raises:
            PdfCreationError: If the envelope does not fit a QR code, the
                symbol cannot be laid out, or serialization fails
        """
        payload = self.symbol_payload(encrypted)
        try:
            symbol = encode_symbol(payload, self.error_correction)
            layout = compute_layout(self.geometry, symbol.size, skip_notes_line,
                                    self.min_module_size_mm)
        except (CapacityExceeded, LayoutError) as e:
            raise PdfCreationError(str(e)) from e

        buffer = io.BytesIO()
        try:
            c = pdf_canvas.Canvas(buffer, pagesize=(layout.page_width, layout.page_height))
            c.setTitle(self.title)
            c.setAuthor(f"Paper Age v{VERSION}")
            c.setSubject("Passphrase-encrypted paper backup")
            c.setCreator(f"paper-age {VERSION}")

            if grid:
                self._draw_debug_grid(c, layout)
            self._draw_title(c, layout)
            self._draw_symbol(c, layout, symbol)
            if not skip_notes_line:
                self._draw_notes_line(c, layout, notes_label)
            self._draw_footer(c, layout)

            c.showPage()
            c.save()
        except Exception as e:
            raise PdfCreationError(f"could not render PDF: {e}") from e

        return buffer.getvalue()

    def _draw_title(self, c, layout: PageLayout) -> None:
        c.setFillColorRGB(0, 0, 0)
        c.setFont("Helvetica-Bold", 18)
        c.drawCentredString(layout.page_width / 2, layout.title_y, self.title)

    def _draw_symbol(self, c, layout: PageLayout, symbol: ModuleGrid) -> None:
        # White backing keeps the quiet zone clear of the debug grid
        c.setFillColorRGB(1, 1, 1)
        c.rect(layout.symbol_x, layout.symbol_y, layout.symbol_extent, layout.symbol_extent,
               stroke=0, fill=1)

        c.setFillColorRGB(0, 0, 0)
        size = layout.module_size
        origin_x = layout.symbol_x + layout.quiet_zone
        top = layout.symbol_y + layout.symbol_extent - layout.quiet_zone

        # One rectangle per horizontal run of dark modules
        for row_idx, row in enumerate(symbol.modules):
            y = top - (row_idx + 1) * size
            col = 0
            while col < len(row):
                if not row[col]:
                    col += 1
                    continue
                start = col
                while col < len(row) and row[col]:
                    col += 1
                c.rect(origin_x + start * size, y, (col - start) * size, size, stroke=0, fill=1)

    def _draw_notes_line(self, c, layout: PageLayout, notes_label: str) -> None:
        font_size = 12
        c.setFont("Helvetica", font_size)
        c.drawString(layout.margin, layout.notes_y, notes_label)
        label_width = stringWidth(notes_label, "Helvetica", font_size)
        c.setLineWidth(0.5)
        c.line(layout.margin + label_width + 3 * mm, layout.notes_y - 1,
               layout.page_width - layout.margin, layout.notes_y - 1)

    def _draw_footer(self, c, layout: PageLayout) -> None:
        c.setFont("Helvetica", 8)
        c.setFillColorRGB(0.4, 0.4, 0.4)
        c.drawString(layout.margin, layout.footer_y, f"Paper Age v{VERSION}")
        c.drawRightString(layout.page_width - layout.margin, layout.footer_y,
                          "Decrypt with: paper-age decrypt <scan>")
        c.setFillColorRGB(0, 0, 0)

    def _draw_debug_grid(self, c, layout: PageLayout) -> None:
        c.setStrokeColorRGB(0.8, 0.8, 0.8)
        c.setLineWidth(0.25)
        step = DEBUG_GRID_SPACING_MM * mm
        x = 0.0
        while x <= layout.page_width:
            c.line(x, 0, x, layout.page_height)
            x += step
        y = 0.0
        while y <= layout.page_height:
            c.line(0, y, layout.page_width, y)
            y += step
        c.setStrokeColorRGB(0, 0, 0)


def create_pdf(title: str, data: BinaryIO, passphrase: Union[str, bytes],
               notes_label: Optional[str] = None,
               skip_notes_line: Optional[bool] = None,
               page_size: Optional[Union[PageSize, str]] = None,
               grid: Optional[bool] = None,
               error_correction: Optional[ErrorCorrection] = None,
               kdf_params: Optional[KdfParams] = None) -> bytes:
    """Encrypt data under a passphrase and render it as a backup PDF.

    The document is initialized before any encryption, so an invalid page
    size or title fails without touching the secret.

    Args:
        title: Document title (page heading and PDF metadata)
        data: Binary stream with the plaintext
        passphrase: Passphrase used to encrypt the data
        notes_label: Label for the notes field (default: "Passphrase:")
        skip_notes_line: Omit the notes placeholder line (default: False)
        page_size: Page size (default: A4)
        grid: Draw a debug grid (default: False)
        error_correction: QR error correction level (default: M)
        kdf_params: Argon2id work factor (default: DEFAULT_KDF_PARAMS)

    Returns:
        PDF file contents

    Raises:
        DocumentInitError, EncryptionError, PdfCreationError

    Example:
        >>> pdf = create_pdf("My Secret", io.BytesIO(b"secret data"), "hunter2")
    """
    notes_label = DEFAULT_NOTES_LABEL if notes_label is None else notes_label
    skip_notes_line = bool(skip_notes_line)
    page_size = DEFAULT_PAGE_SIZE if page_size is None else page_size
    grid = bool(grid)
    error_correction = error_correction or DEFAULT_ERROR_CORRECTION
    kdf_params = kdf_params or DEFAULT_KDF_PARAMS

    document = Document(title, page_size, error_correction=error_correction)

    _plaintext_len, encrypted = encrypt_plaintext(data, passphrase, params=kdf_params)

    return document.create_pdf(grid, notes_label, skip_notes_line, encrypted)


# ============================================================================
# SCANNING FUNCTIONS
# ============================================================================

IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.tif', '.tiff', '.bmp')


def pdf_to_images(pdf_path: str) -> List[np.ndarray]:
    """Convert PDF pages to OpenCV images.

    Args:
        pdf_path: Path to PDF file

    Returns:
        List of images as numpy arrays (OpenCV BGR format)

    Raises:
        DecodeError: If poppler is missing or the PDF cannot be rasterized
    """
    import cv2
    from pdf2image import convert_from_path
    from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError

    try:
        pil_images = convert_from_path(pdf_path, dpi=300)
    except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError) as e:
        raise DecodeError(f"could not rasterize {pdf_path}: {e}") from e

    cv_images = []
    for pil_img in pil_images:
        img_array = np.array(pil_img.convert('RGB'))
        cv_images.append(cv2.cvtColor(img_array, cv2.COLOR_RGB2BGR))

    return cv_images


def load_scan(path: str) -> List[np.ndarray]:
    """Load a scanned PDF or image file as a list of OpenCV images.

    Raises:
        DecodeError: If an image file cannot be read
    """
    if path.lower().endswith('.pdf'):
        return pdf_to_images(path)

    import cv2

    image = cv2.imread(path)
    if image is None:
        raise DecodeError(f"could not read image {path}")
    return [image]


def decode_symbols(image: np.ndarray) -> List[bytes]:
    """Find and decode all QR codes in an image.

    Args:
        image: OpenCV BGR image or a 2-D grayscale array

    Returns:
        Raw payload of every QR code found
    """
    import cv2
    from pyzbar import pyzbar

    gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    decoded_objects = pyzbar.decode(gray, symbols=[pyzbar.ZBarSymbol.QRCODE])
    return [obj.data for obj in decoded_objects]


def read_envelope_from_scan(path: str) -> bytes:
    """Scan a PDF or image and return the first armored envelope found.

    Raises:
        DecodeError: If no QR code carrying an envelope is found
    """
    for image in load_scan(path):
        for payload in decode_symbols(image):
            try:
                return dearmor(payload)
            except DecodeError:
                if payload.startswith(MAGIC):
                    return payload
    raise DecodeError(f"no paper-age QR code found in {path}")


def read_envelope(path: str) -> bytes:
    """Read an envelope from a scan (PDF/image) or from armored text."""
    if path.lower().endswith(('.pdf',) + IMAGE_EXTENSIONS):
        return read_envelope_from_scan(path)
    with open(path, 'rb') as f:
        return dearmor(f.read())


# ============================================================================
# CLI COMMANDS
# ============================================================================

def _fail(message: str) -> None:
    click.echo(f"\nError: {message}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=VERSION)
def cli():
    """Paper Age - passphrase-encrypted paper backups.

    Encrypts a small secret and renders it as a QR code on a printable PDF
    page, and decrypts such pages from scans.
    """
    pass


@cli.command()
@click.argument('input_file', type=click.File('rb'), default='-')
@click.option('-t', '--title', type=str, default=DEFAULT_TITLE, show_default=True,
              help=f'Page title (max. {MAX_TITLE_LENGTH} characters)')
@click.option('-o', '--output', type=click.Path(dir_okay=False, allow_dash=True),
              default='out.pdf', show_default=True,
              help='Output PDF path, or - for standard output')
@click.option('-f', '--force', is_flag=True,
              help='Overwrite the output file if it already exists')
@click.option('--page-size', type=click.Choice([p.value for p in PageSize], case_sensitive=False),
              default=DEFAULT_PAGE_SIZE.value, show_default=True,
              help='Paper size')
@click.option('--error-correction', type=click.Choice([e.value for e in ErrorCorrection]),
              default=DEFAULT_ERROR_CORRECTION.value, show_default=True,
              help='QR error correction level: L(7%), M(15%), Q(25%), H(30%)')
@click.option('--notes-label', type=str, default=DEFAULT_NOTES_LABEL, show_default=True,
              help='Label for the handwritten notes line')
@click.option('--skip-notes-line', is_flag=True,
              help='Omit the notes line')
@click.option('-g', '--grid', is_flag=True,
              help='Draw a debug grid on the page')
@click.option('--passphrase', envvar='PAPERAGE_PASSPHRASE', prompt='Passphrase',
              hide_input=True, confirmation_prompt=True,
              help='Encryption passphrase (prompts if not given; also read from PAPERAGE_PASSPHRASE)')
def encode(input_file, title, output, force, page_size, error_correction,
           notes_label, skip_notes_line, grid, passphrase):
    """Encrypt a secret and render it as a QR code backup PDF.

    Example:
        paper-age encode secret.txt -o backup.pdf --title "Recovery key"
        echo "hunter2" | PAPERAGE_PASSPHRASE=... paper-age encode -o backup.pdf
    """
    if not passphrase:
        _fail("Passphrase must not be empty")
    if output != '-' and os.path.exists(output) and not force:
        _fail(f"Output file '{output}' already exists. Use --force to overwrite.")
    if output == '-' and sys.stdout.isatty():
        _fail("Refusing to write PDF data to a terminal. Use -o to choose a file.")

    level = ErrorCorrection(error_correction)
    try:
        document = Document(title, page_size, error_correction=level)

        click.echo(f"Encrypting (Argon2id: t={DEFAULT_KDF_PARAMS.time_cost}, "
                   f"m={DEFAULT_KDF_PARAMS.memory_cost}KiB, p={DEFAULT_KDF_PARAMS.parallelism})...",
                   err=True)
        plaintext_len, encrypted = encrypt_plaintext(input_file, passphrase)

        payload = document.symbol_payload(encrypted)
        click.echo(f"Plaintext: {plaintext_len:,} bytes, QR payload: {len(payload):,} bytes", err=True)
        click.echo("Writing PDF...", err=True)
        pdf = document.create_pdf(grid, notes_label, skip_notes_line, encrypted)
    except PaperAgeError as e:
        _fail(str(e))

    if output == '-':
        stdout = click.get_binary_stream('stdout')
        stdout.write(pdf)
        stdout.flush()
    else:
        with open(output, 'wb') as f:
            f.write(pdf)
        click.echo(f"\nOutput: {output} ({document.page_size.value}, error correction {level.value})",
                   err=True)


@cli.command()
@click.argument('input_path', type=click.Path(exists=True, dir_okay=False))
@click.option('-o', '--output', type=click.Path(dir_okay=False, allow_dash=True), default='-',
              help='Output file for the plaintext [default: standard output]')
@click.option('-f', '--force', is_flag=True,
              help='Overwrite the output file if it already exists')
@click.option('--passphrase', envvar='PAPERAGE_PASSPHRASE', prompt='Passphrase',
              hide_input=True,
              help='Decryption passphrase (prompts if not given; also read from PAPERAGE_PASSPHRASE)')
def decrypt(input_path, output, force, passphrase):
    """Decrypt a backup from a scan (PDF or image) or armored text.

    Example:
        paper-age decrypt scan.pdf -o secret.txt
        paper-age decrypt qr-text.txt
    """
    if output != '-' and os.path.exists(output) and not force:
        _fail(f"Output file '{output}' already exists. Use --force to overwrite.")

    try:
        click.echo(f"Reading: {input_path}", err=True)
        envelope = read_envelope(input_path)
        click.echo("Decrypting...", err=True)
        plaintext = decrypt_envelope(envelope, passphrase)
    except (PaperAgeError, ImportError, OSError) as e:
        _fail(str(e))

    with click.open_file(output, 'wb') as f:
        f.write(plaintext)
    if output != '-':
        click.echo(f"\nRecovered: {output} ({len(plaintext):,} bytes)", err=True)


@cli.command()
@click.argument('input_path', type=click.Path(exists=True, dir_okay=False))
def info(input_path):
    """Display metadata about a backup PDF or armored envelope.

    Example:
        paper-age info backup.pdf
    """
    click.echo(f"\n{'='*60}")
    click.echo("PAPER AGE BACKUP")
    click.echo(f"{'='*60}")

    if input_path.lower().endswith('.pdf'):
        from pypdf import PdfReader
        from pypdf.errors import PdfReadError

        try:
            reader = PdfReader(input_path)
        except (PdfReadError, OSError) as e:
            _fail(f"could not read PDF: {e}")
        metadata = reader.metadata or {}
        box = reader.pages[0].mediabox
        width_mm, height_mm = float(box.width) / mm, float(box.height) / mm
        page_name = next((p.value for p, g in PAGE_GEOMETRY.items()
                          if abs(g.width_mm - width_mm) < 1 and abs(g.height_mm - height_mm) < 1),
                         'custom')
        click.echo(f"Title:               {metadata.get('/Title', 'N/A')}")
        click.echo(f"Creator:             {metadata.get('/Creator', 'N/A')}")
        click.echo(f"Page Size:           {page_name} ({width_mm:.1f} x {height_mm:.1f} mm)")
        click.echo(f"PDF Pages:           {len(reader.pages)}")

    try:
        header = parse_header(read_envelope(input_path))
    except (ImportError, PaperAgeError, OSError) as e:
        click.echo(f"Envelope:            not readable ({e})")
    else:
        click.echo(f"Envelope Version:    {header.format_version}")
        click.echo(f"Cipher:              {header.cipher.name}")
        click.echo(f"Argon2id Parameters: time={header.params.time_cost}, "
                   f"memory={header.params.memory_cost}KiB, parallelism={header.params.parallelism}")
        click.echo(f"Chunk Size:          {header.chunk_size:,} bytes")
    click.echo(f"{'='*60}\n")


if __name__ == '__main__':
    cli()
