from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Tuple

from scenario import MIN_MDTS_BYTES, Scenario
from utils import kib_to_chunk_bytes, mib_to_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkInfo:
    chunk_index: int
    stripe_index: int
    lane_index: int
    total_bytes: int
    segments: Tuple[int, ...]  # MDTS-bounded command sizes, in issue order


@dataclass(frozen=True)
class CommandJob:
    object_index: int
    chunk_index: int
    stripe_index: int
    lane_index: int
    segment_index: int
    bytes: int


def file_bytes(scenario: Scenario) -> int:
    return mib_to_bytes(scenario.file_size_mb)


def chunk_bytes(scenario: Scenario) -> int:
    return kib_to_chunk_bytes(scenario.chunk_size_kb)


def split_segments(length: int, mdts: int, fallback: int) -> Tuple[int, ...]:
    segments: List[int] = []
    remaining = length
    while remaining > 0:
        take = min(mdts, remaining)
        segments.append(take)
        remaining -= take
    if not segments:
        # An empty tail chunk still costs one command.
        segments.append(min(mdts, fallback))
    return tuple(segments)


def build_chunk_infos(
    scenario: Scenario, total_file_bytes: int, total_chunk_bytes: int
) -> List[ChunkInfo]:
    """
    Split the file into stripe-aligned chunks and each chunk into commands.

    Chunk i lands on lane i % stripe_width in stripe i // stripe_width; the
    last chunk (and the last command of every chunk) takes the remainder.
    """
    total_chunks = max(1, math.ceil(total_file_bytes / total_chunk_bytes))
    mdts = max(MIN_MDTS_BYTES, scenario.mdts_bytes)
    width = scenario.stripe_width

    chunks: List[ChunkInfo] = []
    for chunk_index in range(total_chunks):
        start = chunk_index * total_chunk_bytes
        length = min(total_chunk_bytes, max(total_file_bytes - start, 0))
        chunks.append(
            ChunkInfo(
                chunk_index=chunk_index,
                stripe_index=chunk_index // width,
                lane_index=chunk_index % width,
                total_bytes=length,
                segments=split_segments(length, mdts, total_chunk_bytes),
            )
        )
    logger.debug(
        "Partitioned %d bytes into %d chunks of %d bytes (MDTS %d)",
        total_file_bytes,
        total_chunks,
        total_chunk_bytes,
        mdts,
    )
    return chunks


def stripe_count(scenario: Scenario, chunks: List[ChunkInfo]) -> int:
    return max(1, math.ceil(len(chunks) / scenario.stripe_width))


def commands_per_object(chunks: List[ChunkInfo]) -> int:
    return sum(len(chunk.segments) for chunk in chunks)


def build_lane_jobs(
    scenario: Scenario, chunks: List[ChunkInfo], stripes: int
) -> List[List[CommandJob]]:
    # Jobs are queued stripe by stripe, interleaving in-flight objects.
    lane_jobs: List[List[CommandJob]] = [[] for _ in range(scenario.stripe_width)]
    for stripe_index in range(stripes):
        for object_index in range(scenario.objects_in_flight):
            for lane_index in range(scenario.stripe_width):
                chunk_index = stripe_index * scenario.stripe_width + lane_index
                if chunk_index >= len(chunks):
                    continue
                chunk = chunks[chunk_index]
                for segment_index, size in enumerate(chunk.segments):
                    lane_jobs[lane_index].append(
                        CommandJob(
                            object_index=object_index,
                            chunk_index=chunk_index,
                            stripe_index=stripe_index,
                            lane_index=lane_index,
                            segment_index=segment_index,
                            bytes=size,
                        )
                    )
    return lane_jobs
