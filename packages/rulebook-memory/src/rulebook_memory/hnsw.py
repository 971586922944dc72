"""Hierarchical Navigable Small World index over unit vectors.

Nodes live in a flat arena addressed by integer handles: vectors are rows
of one growable float32 matrix and adjacency is stored as lists of handles
per layer, so the cyclic graph never holds object references. A reverse
edge map lets removal unlink every inbound edge; freed handles are reused
by later inserts and compacted away on serialization.

Distances are cosine distances on pre-normalized vectors, i.e.
``1 - dot(a, b)``.
"""
from __future__ import annotations

import heapq
import math
import os
import random
import struct
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from rulebook_core.errors import IndexCorruptedError, StorageUnavailableError
from rulebook_core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = get_logger("memory.hnsw")

_MAGIC = b"HNSW"
_FORMAT_VERSION = 1
_HEADER = struct.Struct("<4sBIHHIiH")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")

_INITIAL_CAPACITY = 64


class HNSWIndex:
    """Approximate nearest-neighbour search with logarithmic query cost.

    Args:
        dimensions: Vector length; every inserted vector must match.
        m: Max neighbours per node on layers above 0 (layer 0 allows 2*m).
        ef_construction: Beam width used while inserting.
        ef_search: Default beam width for :meth:`search` (raised to k).
        seed: Seed for layer assignment; fixed seeds give reproducible
            graphs.

    Example::

        index = HNSWIndex(dimensions=256)
        index.insert("r1", vectorizer.vectorize("connection pooling"))
        index.search(vectorizer.vectorize("pooling"), k=5)
    """

    def __init__(
        self,
        dimensions: int,
        m: int = 16,
        ef_construction: int = 200,
        ef_search: int = 50,
        seed: int | None = None,
    ) -> None:
        if dimensions <= 0:
            msg = f"dimensions must be positive, got {dimensions}"
            raise ValueError(msg)
        if m < 2:
            msg = f"m must be at least 2, got {m}"
            raise ValueError(msg)
        self.dimensions = dimensions
        self.m = m
        self.m0 = 2 * m
        self.ef_construction = max(ef_construction, 1)
        self.ef_search = max(ef_search, 1)
        self._level_mult = 1.0 / math.log(m)
        self._rng = random.Random(seed)

        self._data = np.zeros((_INITIAL_CAPACITY, dimensions), dtype=np.float32)
        self._labels: list[str | None] = []
        self._levels: list[int] = []
        self._links: list[list[list[int]]] = []
        self._inbound: list[list[set[int]]] = []
        self._free: list[int] = []
        self._handles: dict[str, int] = {}
        self._nbytes = _HEADER.size
        self._entry: int | None = None
        self._max_level = 0

    # ── Introspection ───────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, label: object) -> bool:
        return label in self._handles

    def labels(self) -> Iterator[str]:
        return iter(list(self._handles))

    def get_vector(self, label: str) -> np.ndarray | None:
        handle = self._handles.get(label)
        return None if handle is None else self._data[handle].copy()

    @property
    def max_level(self) -> int:
        return self._max_level

    @property
    def nbytes(self) -> int:
        """Size of the serialized form of the live graph."""
        return self._nbytes

    @property
    def capacity(self) -> int:
        """Handles allocated so far, live or free."""
        return len(self._labels)

    # ── Internals ───────────────────────────────────────────────────

    def _coerce(self, vector: np.ndarray | list[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        if arr.shape != (self.dimensions,):
            msg = (
                f"Vector dimensions mismatch: expected {self.dimensions},"
                f" got {arr.shape[-1] if arr.ndim else 0}"
            )
            raise ValueError(msg)
        return arr

    def _random_level(self) -> int:
        return int(-math.log(1.0 - self._rng.random()) * self._level_mult)

    def _node_bytes(self, label: str, level: int) -> int:
        """Serialized size of a node excluding its neighbour handles."""
        return (
            _U16.size + len(label.encode("utf-8"))
            + _U16.size + self.dimensions * 4
            + _U32.size * (level + 1)
        )

    def _allocate(self, label: str, vector: np.ndarray, level: int) -> int:
        links: list[list[int]] = [[] for _ in range(level + 1)]
        inbound: list[set[int]] = [set() for _ in range(level + 1)]
        if self._free:
            handle = heapq.heappop(self._free)
            self._labels[handle] = label
            self._levels[handle] = level
            self._links[handle] = links
            self._inbound[handle] = inbound
        else:
            handle = len(self._labels)
            if handle >= self._data.shape[0]:
                grown = np.zeros(
                    (self._data.shape[0] * 2, self.dimensions), dtype=np.float32
                )
                grown[:handle] = self._data[:handle]
                self._data = grown
            self._labels.append(label)
            self._levels.append(level)
            self._links.append(links)
            self._inbound.append(inbound)
        self._data[handle] = vector
        self._handles[label] = handle
        self._nbytes += self._node_bytes(label, level)
        return handle

    def _set_links(self, handle: int, layer: int, links: list[int]) -> None:
        """Replace *handle*'s out-links on *layer*, keeping the reverse map."""
        old = self._links[handle][layer]
        for n in old:
            self._inbound[n][layer].discard(handle)
        for n in links:
            self._inbound[n][layer].add(handle)
        self._links[handle][layer] = links
        self._nbytes += _U32.size * (len(links) - len(old))

    def _distances(self, query: np.ndarray, handles: list[int]) -> list[float]:
        return (1.0 - self._data[handles] @ query).tolist()

    def _distance(self, query: np.ndarray, handle: int) -> float:
        return float(1.0 - self._data[handle] @ query)

    def _alive(self, handle: int) -> bool:
        return self._labels[handle] is not None

    def _search_layer(
        self,
        query: np.ndarray,
        entry_points: list[tuple[float, int]],
        ef: int,
        layer: int,
    ) -> list[tuple[float, int]]:
        """Beam search on one layer; returns (distance, handle) ascending."""
        visited = {h for _, h in entry_points}
        candidates = list(entry_points)
        heapq.heapify(candidates)
        # Max-heap on (distance, handle) via negation.
        results = [(-d, -h) for d, h in entry_points]
        heapq.heapify(results)
        while len(results) > ef:
            heapq.heappop(results)

        while candidates:
            dist, handle = heapq.heappop(candidates)
            if dist > -results[0][0]:
                break
            fresh = [
                n for n in self._links[handle][layer]
                if n not in visited and self._alive(n)
            ]
            if not fresh:
                continue
            visited.update(fresh)
            for neighbor, d in zip(fresh, self._distances(query, fresh), strict=True):
                if len(results) < ef or d < -results[0][0]:
                    heapq.heappush(candidates, (d, neighbor))
                    heapq.heappush(results, (-d, -neighbor))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted((-d, -h) for d, h in results)

    def _select_neighbors(
        self, candidates: list[tuple[float, int]], limit: int
    ) -> list[tuple[float, int]]:
        """Neighbour selection heuristic with pruned-connection backfill.

        A candidate is kept only if it is closer to the base node than to
        every neighbour already kept; rejected candidates fill any
        remaining slots in distance order.
        """
        selected: list[tuple[float, int]] = []
        pruned: list[tuple[float, int]] = []
        for dist, handle in sorted(candidates):
            if len(selected) >= limit:
                break
            if selected:
                kept = [h for _, h in selected]
                to_kept = 1.0 - self._data[kept] @ self._data[handle]
                if bool((to_kept < dist).any()):
                    pruned.append((dist, handle))
                    continue
            selected.append((dist, handle))
        for item in pruned:
            if len(selected) >= limit:
                break
            selected.append(item)
        return selected

    def _shrink(self, handle: int, layer: int, pool: list[int]) -> None:
        """Set *handle*'s links on *layer* to the best of *pool*."""
        cap = self.m0 if layer == 0 else self.m
        pool = [n for n in dict.fromkeys(pool) if n != handle and self._alive(n)]
        if len(pool) <= cap:
            self._set_links(handle, layer, pool)
            return
        dists = self._distances(self._data[handle], pool)
        chosen = self._select_neighbors(list(zip(dists, pool, strict=True)), cap)
        self._set_links(handle, layer, [h for _, h in chosen])

    # ── Public API ──────────────────────────────────────────────────

    def insert(self, label: str, vector: np.ndarray | list[float]) -> None:
        """Add *vector* under *label*, replacing any previous entry."""
        vec = self._coerce(vector)
        if label in self._handles:
            self.remove(label)

        level = self._random_level()
        handle = self._allocate(label, vec, level)

        if self._entry is None:
            self._entry = handle
            self._max_level = level
            return

        entry = [(self._distance(vec, self._entry), self._entry)]
        for layer in range(self._max_level, level, -1):
            entry = self._search_layer(vec, entry, 1, layer)

        for layer in range(min(level, self._max_level), -1, -1):
            candidates = self._search_layer(vec, entry, self.ef_construction, layer)
            cap = self.m0 if layer == 0 else self.m
            neighbors = self._select_neighbors(candidates, self.m)
            self._set_links(handle, layer, [h for _, h in neighbors])
            for _, neighbor in neighbors:
                links = [*self._links[neighbor][layer], handle]
                if len(links) > cap:
                    self._shrink(neighbor, layer, links)
                else:
                    self._set_links(neighbor, layer, links)
            entry = candidates

        if level > self._max_level:
            self._entry = handle
            self._max_level = level

    def remove(self, label: str) -> bool:
        """Delete *label*, unlink every edge into it and repair those nodes.

        Each node that pointed at the removed one gets its remaining links
        plus the removed node's neighbours as the candidate pool.
        """
        handle = self._handles.pop(label, None)
        if handle is None:
            return False

        self._labels[handle] = None
        former_by_layer = [list(links) for links in self._links[handle]]
        for layer in range(len(former_by_layer)):
            self._set_links(handle, layer, [])

        for layer, former in enumerate(former_by_layer):
            for neighbor in sorted(self._inbound[handle][layer]):
                links = [n for n in self._links[neighbor][layer] if n != handle]
                self._shrink(neighbor, layer, links + former)

        self._nbytes -= self._node_bytes(label, self._levels[handle])
        heapq.heappush(self._free, handle)

        if self._entry == handle:
            self._entry = None
            self._max_level = 0
            for h in self._handles.values():
                if self._entry is None or self._levels[h] > self._max_level or (
                    self._levels[h] == self._max_level and h < self._entry
                ):
                    self._entry = h
                    self._max_level = self._levels[h]
        return True

    def search(
        self,
        vector: np.ndarray | list[float],
        k: int,
        ef: int | None = None,
    ) -> list[tuple[str, float]]:
        """Return up to *k* ``(label, distance)`` pairs, nearest first.

        An empty index yields ``[]``; ``k >= len(self)`` returns every
        node, ranked exactly.
        """
        if self._entry is None or k <= 0:
            return []
        query = self._coerce(vector)

        if k >= len(self._handles):
            handles = sorted(self._handles.values())
            ranked = sorted(zip(self._distances(query, handles), handles, strict=True))
        else:
            beam = max(ef or self.ef_search, k)
            entry = [(self._distance(query, self._entry), self._entry)]
            for layer in range(self._max_level, 0, -1):
                entry = self._search_layer(query, entry, 1, layer)
            ranked = self._search_layer(query, entry, beam, 0)[:k]

        return [(self._labels[h], d) for d, h in ranked]  # type: ignore[misc]

    def clear(self) -> None:
        self._data = np.zeros((_INITIAL_CAPACITY, self.dimensions), dtype=np.float32)
        self._labels.clear()
        self._levels.clear()
        self._links.clear()
        self._inbound.clear()
        self._free.clear()
        self._handles.clear()
        self._nbytes = _HEADER.size
        self._entry = None
        self._max_level = 0

    # ── Persistence ─────────────────────────────────────────────────

    def serialize(self) -> bytes:
        """Encode the live graph as a little-endian binary blob.

        Layout: header (magic, version, dimensions, m, ef_construction,
        node count, entry handle, max level), then per node the UTF-8
        label, its level, the float32 vector and, per layer, the count
        and handles of its neighbours. Handles are renumbered densely in
        arena order, which keeps tie-breaking identical after a reload.
        """
        live = sorted(self._handles.values())
        remap = {h: i for i, h in enumerate(live)}
        entry = remap[self._entry] if self._entry is not None else -1

        out = bytearray(_HEADER.pack(
            _MAGIC, _FORMAT_VERSION, self.dimensions, self.m,
            min(self.ef_construction, 0xFFFF), len(live), entry, self._max_level,
        ))
        for handle in live:
            label = self._labels[handle].encode("utf-8")  # type: ignore[union-attr]
            out += _U16.pack(len(label))
            out += label
            out += _U16.pack(self._levels[handle])
            out += self._data[handle].astype("<f4").tobytes()
            for layer_links in self._links[handle]:
                kept = [remap[n] for n in layer_links if n in remap]
                out += _U32.pack(len(kept))
                out += struct.pack(f"<{len(kept)}I", *kept)
        return bytes(out)

    @classmethod
    def deserialize(
        cls,
        data: bytes,
        ef_search: int = 50,
        seed: int | None = None,
    ) -> HNSWIndex:
        """Rebuild an index from :meth:`serialize` output.

        Raises:
            IndexCorruptedError: If the blob is truncated, has the wrong
                magic/version, or references nodes that do not exist.
        """
        try:
            return cls._decode(memoryview(data), ef_search, seed)
        except IndexCorruptedError:
            raise
        except (struct.error, UnicodeDecodeError, ValueError, IndexError) as exc:
            raise IndexCorruptedError(f"Invalid HNSW index blob: {exc}") from exc

    @classmethod
    def _decode(cls, view: memoryview, ef_search: int, seed: int | None) -> HNSWIndex:
        (magic, version, dimensions, m, ef_construction,
         count, entry, max_level) = _HEADER.unpack_from(view, 0)
        if magic != _MAGIC:
            raise IndexCorruptedError("Invalid HNSW index blob: bad magic")
        if version != _FORMAT_VERSION:
            raise IndexCorruptedError(
                f"Unsupported HNSW format version: {version}"
            )
        offset = _HEADER.size
        index = cls(dimensions, m=m, ef_construction=ef_construction,
                    ef_search=ef_search, seed=seed)
        vector_bytes = dimensions * 4
        edges: list[tuple[int, int, list[int]]] = []

        for _ in range(count):
            (label_len,) = _U16.unpack_from(view, offset)
            offset += _U16.size
            label = bytes(view[offset:offset + label_len]).decode("utf-8")
            if len(label.encode("utf-8")) != label_len:
                raise IndexCorruptedError("Invalid HNSW index blob: truncated label")
            offset += label_len
            (level,) = _U16.unpack_from(view, offset)
            offset += _U16.size
            if offset + vector_bytes > len(view):
                raise IndexCorruptedError("Invalid HNSW index blob: truncated vector")
            vector = np.frombuffer(view[offset:offset + vector_bytes], dtype="<f4")
            offset += vector_bytes
            handle = index._allocate(label, vector.astype(np.float32), level)
            for layer in range(level + 1):
                (n,) = _U32.unpack_from(view, offset)
                offset += _U32.size
                neighbors = list(struct.unpack_from(f"<{n}I", view, offset))
                offset += 4 * n
                if any(nb >= count for nb in neighbors):
                    raise IndexCorruptedError(
                        "Invalid HNSW index blob: dangling neighbour handle"
                    )
                edges.append((handle, layer, neighbors))

        if offset != len(view):
            raise IndexCorruptedError("Invalid HNSW index blob: trailing bytes")
        if len(index._handles) != count:
            raise IndexCorruptedError("Invalid HNSW index blob: duplicate labels")
        if count:
            if not 0 <= entry < count:
                raise IndexCorruptedError("Invalid HNSW index blob: bad entry point")
            index._entry = entry
            index._max_level = max_level
        for handle, layer, neighbors in edges:
            if any(index._levels[nb] < layer for nb in neighbors):
                raise IndexCorruptedError(
                    f"Invalid HNSW index blob: node {handle} links above"
                    f" its neighbour's level on layer {layer}"
                )
            index._set_links(handle, layer, neighbors)
        return index

    def save(self, path: Path | str) -> None:
        """Atomically write the serialized index to *path*."""
        path = Path(path)
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(self.serialize())
            os.replace(tmp, path)
        except OSError as exc:
            raise StorageUnavailableError(
                f"Cannot write vector index {path}: {exc}"
            ) from exc
        logger.debug("Saved vector index (%d nodes) to %s", len(self), path)

    @classmethod
    def load(
        cls,
        path: Path | str,
        ef_search: int = 50,
        seed: int | None = None,
    ) -> HNSWIndex:
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise StorageUnavailableError(
                f"Cannot read vector index {path}: {exc}"
            ) from exc
        return cls.deserialize(data, ef_search=ef_search, seed=seed)
