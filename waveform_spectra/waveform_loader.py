"""
WaveformLoader
==============
Waveform sources: anything with

  event_count(channel) -> int
  read_event(channel, index) -> np.ndarray

ROOTWaveformLoader reads ADAQ acquisition files with uproot:

  TTree   "WaveformTree"
  branch  "VoltageInADC_Ch<N>"   one sample vector per event

Entries are read in chunks (``chunk_size`` events per branch read) and
the last chunk per channel is cached, so sequential event loops touch the
file once per chunk.

The loader pickles without its file handle; each worker process reopens
the file on first read.

ArrayWaveformSource serves in-memory waveforms (tests, synthetic data,
already-decoded acquisitions).
"""

from __future__ import annotations
import logging
import os
import re
import numpy as np

logger = logging.getLogger(__name__)

WAVEFORM_TREE   = "WaveformTree"
BRANCH_TEMPLATE = "VoltageInADC_Ch{channel}"
_BRANCH_RE      = re.compile(r"^VoltageInADC_Ch(\d+)$")

_DEFAULT_CHUNK = 1000


class SourceUnavailableError(IOError):
    """The waveform source cannot be opened or has no data for a channel."""


# ─────────────────────────────────────────────────────────────────────────── #
# In-memory source
# ─────────────────────────────────────────────────────────────────────────── #

class ArrayWaveformSource:

    def __init__(self, waveforms: dict):
        # channel -> sequence of waveforms (list of arrays or a 2-D array)
        self.waveforms = {int(ch): list(wfs) for ch, wfs in waveforms.items()}

    def channels(self) -> list:
        return sorted(self.waveforms)

    def event_count(self, channel: int) -> int:
        return len(self._channel(channel))

    def read_event(self, channel: int, index: int) -> np.ndarray:
        events = self._channel(channel)
        if not 0 <= index < len(events):
            raise IndexError(f"Event {index} out of range for channel {channel} "
                             f"({len(events)} events)")
        return np.asarray(events[index])

    def _channel(self, channel):
        if channel not in self.waveforms:
            raise SourceUnavailableError(
                f"Channel {channel} not present (have {self.channels()})")
        return self.waveforms[channel]


# ─────────────────────────────────────────────────────────────────────────── #
# ROOT file source (uproot)
# ─────────────────────────────────────────────────────────────────────────── #

class ROOTWaveformLoader:

    def __init__(self, filename: str, tree_name: str = WAVEFORM_TREE,
                  chunk_size: int = _DEFAULT_CHUNK):
        self.filename   = filename
        self.tree_name  = tree_name
        self.chunk_size = max(1, int(chunk_size))
        self._file  = None
        self._tree  = None
        self._cache: dict = {}   # channel -> (chunk_start, chunk_array)

    # ------------------------------------------------------------------ #
    # File handling
    # ------------------------------------------------------------------ #

    def open(self) -> dict:
        """Open the file and describe its waveform tree."""
        import uproot

        if not os.path.isfile(self.filename):
            raise SourceUnavailableError(f"Cannot open ROOT file: {self.filename}")
        try:
            self._file = uproot.open(self.filename)
        except (OSError, ValueError) as e:
            raise SourceUnavailableError(
                f"Cannot open ROOT file: {self.filename} ({e})") from e

        if self.tree_name not in self._file:
            keys = [k.split(";")[0] for k in self._file.keys()]
            self.close()
            raise SourceUnavailableError(
                f"TTree '{self.tree_name}' not found in {self.filename} "
                f"(keys: {keys})")
        self._tree = self._file[self.tree_name]

        info = {
            "filename": self.filename,
            "tree":     self.tree_name,
            "entries":  int(self._tree.num_entries),
            "channels": self.channels(),
        }
        logger.info("Opened %s: %d events, channels %s",
                    self.filename, info["entries"], info["channels"])
        return info

    def close(self):
        if self._file is not None:
            self._file.close()
        self._file  = None
        self._tree  = None
        self._cache = {}

    def _ensure_open(self):
        if self._tree is None:
            self.open()
        return self._tree

    def __getstate__(self):
        state = self.__dict__.copy()
        state["_file"]  = None
        state["_tree"]  = None
        state["_cache"] = {}
        return state

    # ------------------------------------------------------------------ #
    # Source interface
    # ------------------------------------------------------------------ #

    def channels(self) -> list:
        tree = self._ensure_open()
        found = []
        for name in tree.keys():
            m = _BRANCH_RE.match(name)
            if m:
                found.append(int(m.group(1)))
        return sorted(found)

    def event_count(self, channel: int) -> int:
        tree = self._ensure_open()
        self._branch(channel)
        return int(tree.num_entries)

    def read_event(self, channel: int, index: int) -> np.ndarray:
        tree = self._ensure_open()
        n = int(tree.num_entries)
        if not 0 <= index < n:
            raise IndexError(f"Event {index} out of range ({n} events)")

        start = (index // self.chunk_size) * self.chunk_size
        cached = self._cache.get(channel)
        if cached is None or cached[0] != start:
            stop = min(start + self.chunk_size, n)
            arr  = self._branch(channel).array(library="np",
                                               entry_start=start, entry_stop=stop)
            self._cache[channel] = (start, arr)
            logger.debug("Read ch%d entries [%d, %d) from %s",
                         channel, start, stop, self.filename)
            cached = self._cache[channel]
        return np.asarray(cached[1][index - start])

    def _branch(self, channel: int):
        tree = self._ensure_open()
        name = BRANCH_TEMPLATE.format(channel=channel)
        if name not in tree.keys():
            raise SourceUnavailableError(
                f"Channel {channel} has no branch '{name}' in {self.filename}")
        return tree[name]
