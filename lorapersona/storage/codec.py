"""Binary adapter format.

Little-endian layout::

    u32 version | u32 rank | u32 embeddingDim | f32 scalingFactor
    f32[rank * embeddingDim]          matrixA
    f32[embeddingDim * rank]          matrixB
    f32[len(A) + len(B)]              fisherInformation (only when present)
    u32 metadataJsonByteLength
    UTF-8 JSON {userId, version, createdAt, updatedAt, metadata}

The Fisher block has no flag of its own; a reader infers it from the bytes
left between the matrices and the trailing metadata length field.
"""

from __future__ import annotations

import json
import struct

import numpy as np

from lorapersona.logging import get_logger
from lorapersona.service.errors import MalformedBinaryError
from lorapersona.storage.models import (
    AdapterMetadata,
    UserLoRAAdapter,
    format_timestamp,
    parse_timestamp,
)

logger = get_logger(__name__)

HEADER = struct.Struct("<IIIf")
LENGTH = struct.Struct("<I")
WIRE_FLOAT = np.dtype("<f4")
# Approximate size of the JSON metadata blob, used for size estimates
METADATA_OVERHEAD_BYTES = 256


def estimate_size_bytes(rank: int, embedding_dim: int) -> int:
    return HEADER.size + 2 * rank * embedding_dim * WIRE_FLOAT.itemsize + METADATA_OVERHEAD_BYTES


def _metadata_blob(adapter: UserLoRAAdapter) -> bytes:
    payload = {
        "userId": adapter.user_id,
        "version": adapter.version,
        "createdAt": format_timestamp(adapter.created_at),
        "updatedAt": format_timestamp(adapter.updated_at),
        "metadata": adapter.metadata.to_dict(),
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def encode_adapter(adapter: UserLoRAAdapter) -> bytes:
    blob = _metadata_blob(adapter)
    parts = [
        HEADER.pack(adapter.version, adapter.rank, adapter.embedding_dim, adapter.scaling_factor),
        adapter.matrix_a.astype(WIRE_FLOAT).tobytes(),
        adapter.matrix_b.astype(WIRE_FLOAT).tobytes(),
    ]
    if adapter.fisher_information is not None:
        parts.append(adapter.fisher_information.astype(WIRE_FLOAT).tobytes())
    parts.append(LENGTH.pack(len(blob)))
    parts.append(blob)
    return b"".join(parts)


def _read_floats(data: bytes, offset: int, count: int) -> np.ndarray:
    return np.frombuffer(data, dtype=WIRE_FLOAT, count=count, offset=offset).astype(np.float32)


def _metadata_length_at(data: bytes, offset: int):
    if offset + LENGTH.size > len(data):
        return None
    (length,) = LENGTH.unpack_from(data, offset)
    if offset + LENGTH.size + length != len(data):
        return None
    return length


def decode_adapter(data: bytes) -> UserLoRAAdapter:
    """Rebuild an adapter from encode_adapter output.

    Raises:
        MalformedBinaryError: the buffer is truncated, its sections do not
            add up, or the metadata JSON is unreadable.
    """
    data = bytes(data)
    total = len(data)
    if total < HEADER.size + LENGTH.size:
        raise MalformedBinaryError(
            "adapter buffer shorter than header",
            detail={"length": total, "minimum": HEADER.size + LENGTH.size},
        )
    version, rank, embedding_dim, scaling_factor = HEADER.unpack_from(data, 0)
    if rank == 0 or embedding_dim == 0:
        raise MalformedBinaryError(
            "adapter header has zero rank or embedding dimension",
            detail={"rank": rank, "embedding_dim": embedding_dim},
        )

    matrix_len = rank * embedding_dim
    matrix_bytes = matrix_len * WIRE_FLOAT.itemsize
    offset = HEADER.size
    if total < offset + 2 * matrix_bytes + LENGTH.size:
        raise MalformedBinaryError(
            "adapter buffer truncated inside matrices",
            detail={"length": total, "required": offset + 2 * matrix_bytes + LENGTH.size},
        )
    matrix_a = _read_floats(data, offset, matrix_len)
    offset += matrix_bytes
    matrix_b = _read_floats(data, offset, matrix_len)
    offset += matrix_bytes

    # The JSON blob must end exactly at the end of the buffer, right after
    # its length field; that field sits either directly after matrixB or
    # after the Fisher block.
    fisher_bytes = 2 * matrix_bytes
    fisher = None
    metadata_length = _metadata_length_at(data, offset)
    if metadata_length is None:
        metadata_length = _metadata_length_at(data, offset + fisher_bytes)
        if metadata_length is None:
            raise MalformedBinaryError(
                "adapter sections do not add up",
                detail={"length": total, "after_matrices": total - offset, "fisher_bytes": fisher_bytes},
            )
        fisher = _read_floats(data, offset, 2 * matrix_len)
        offset += fisher_bytes
    offset += LENGTH.size

    try:
        payload = json.loads(data[offset:].decode("utf-8"))
        adapter = UserLoRAAdapter(
            user_id=str(payload["userId"]),
            rank=rank,
            matrix_a=matrix_a,
            matrix_b=matrix_b,
            scaling_factor=scaling_factor,
            embedding_dim=embedding_dim,
            version=version,
            created_at=parse_timestamp(payload["createdAt"]),
            updated_at=parse_timestamp(payload["updatedAt"]),
            metadata=AdapterMetadata.from_dict(payload["metadata"]),
            fisher_information=fisher,
        )
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as exc:
        logger.warning("adapter_deserialize_failed", error=str(exc), length=total)
        raise MalformedBinaryError(
            "adapter metadata unreadable", detail={"error": str(exc)}
        ) from exc
    return adapter
