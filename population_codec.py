"""Binary wire form of a portfolio population: base64-encoded ``.npy`` bytes."""

import base64
import binascii
import io
import math

import numpy as np

from simulation_errors import DecodeError


NUMERIC_KINDS = "iuf"


def encode_population_blob(population):
    """Pack a population of weight vectors into base64-encoded ``.npy`` bytes."""
    buffer = io.BytesIO()
    np.save(buffer, np.asarray(population, dtype=np.float64), allow_pickle=False)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def _read_header(stream):
    version = np.lib.format.read_magic(stream)
    if version == (1, 0):
        return np.lib.format.read_array_header_1_0(stream)
    if version == (2, 0):
        return np.lib.format.read_array_header_2_0(stream)
    raise ValueError(f"unsupported .npy format version {version}")


def decode_population_blob(blob):
    """Unpack a ``portfolios x assets`` float64 matrix from :func:`encode_population_blob` output.

    The ``.npy`` header is checked against the bytes actually supplied before
    any array is allocated.
    """
    if not isinstance(blob, str):
        raise DecodeError("portfolios_blob must be a base64 string.")
    try:
        raw = base64.b64decode(blob.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise DecodeError(f"Failed to decode portfolios_blob: {exc}") from exc

    stream = io.BytesIO(raw)
    try:
        shape, _, dtype = _read_header(stream)
    except (ValueError, EOFError, SyntaxError, TypeError) as exc:
        raise DecodeError(f"Failed to decode portfolios_blob header: {exc}") from exc

    if dtype.hasobject or dtype.kind not in NUMERIC_KINDS:
        raise DecodeError(f"portfolios_blob holds unsupported dtype {dtype}.")
    if len(shape) != 2:
        raise DecodeError("portfolios_blob must hold a 2-D portfolios x assets array.")
    declared = math.prod(shape) * dtype.itemsize
    supplied = len(raw) - stream.tell()
    if declared > supplied:
        raise DecodeError(f"portfolios_blob declares {declared} data bytes but carries {supplied}.")

    stream.seek(0)
    try:
        population = np.load(stream, allow_pickle=False)
    except (ValueError, OSError, EOFError) as exc:
        raise DecodeError(f"Failed to decode portfolios_blob: {exc}") from exc

    population = population.astype(np.float64)
    if not np.all(np.isfinite(population)):
        raise DecodeError("portfolios_blob contains non-finite weights.")
    return population
