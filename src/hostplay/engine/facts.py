"""
Hostplay Fact Cache

Per-host store of discovered facts for one run, optionally persisted as
one JSON file per host between runs.
"""

import copy
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 86400


class FactCache:
    """
    Process-wide fact store keyed by host name.

    Readers get deep copies, so a fact set only changes through ``set`` or
    ``update`` (a fact refresh).
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        """
        Args:
            path: Directory for JSON persistence; None keeps facts in memory only
            timeout: Seconds after which persisted facts are considered stale
        """
        self.path = Path(path) if path else None
        self.timeout = timeout
        self._facts: Dict[str, Dict[str, Any]] = {}
        self._stamps: Dict[str, float] = {}

    def get(self, host: str) -> Dict[str, Any]:
        """Return a copy of the facts for a host (empty if none)."""
        return copy.deepcopy(self._facts.get(host, {}))

    def has(self, host: str) -> bool:
        return host in self._facts

    def set(self, host: str, facts: Dict[str, Any]) -> None:
        """Replace the facts for a host."""
        self._facts[host] = copy.deepcopy(dict(facts))
        self._stamps[host] = time.time()

    def update(self, host: str, facts: Dict[str, Any]) -> None:
        """Merge new facts into a host's existing facts."""
        current = self._facts.setdefault(host, {})
        current.update(copy.deepcopy(dict(facts)))
        self._stamps[host] = time.time()

    def clear(self, host: Optional[str] = None) -> None:
        """Drop facts for one host, or for all hosts."""
        if host is None:
            self._facts.clear()
            self._stamps.clear()
        else:
            self._facts.pop(host, None)
            self._stamps.pop(host, None)

    def hosts(self) -> list:
        return list(self._facts)

    def load(self) -> int:
        """
        Load persisted facts, skipping entries older than the timeout.

        Returns:
            Number of hosts loaded
        """
        if not self.path or not self.path.is_dir():
            return 0

        now = time.time()
        loaded = 0
        for item in sorted(self.path.glob('*.json')):
            try:
                entry = json.loads(item.read_text(encoding='utf-8'))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable fact cache entry %s: %s", item, e)
                continue
            if not isinstance(entry, dict) or not isinstance(entry.get('facts', {}), dict):
                logger.warning("Ignoring malformed fact cache entry %s", item)
                continue
            try:
                stamp = float(entry.get('timestamp', 0))
            except (TypeError, ValueError):
                logger.warning("Ignoring fact cache entry %s with bad timestamp", item)
                continue
            if self.timeout and now - stamp > self.timeout:
                logger.debug("Fact cache entry for %s expired", item.stem)
                continue
            self._facts[item.stem] = entry.get('facts', {})
            self._stamps[item.stem] = stamp
            loaded += 1
        logger.debug("Loaded cached facts for %d hosts from %s", loaded, self.path)
        return loaded

    def flush(self) -> None:
        """Persist all facts to the cache directory (no-op when in-memory)."""
        if not self.path:
            return
        self.path.mkdir(parents=True, exist_ok=True)
        for host, facts in self._facts.items():
            entry = {'timestamp': self._stamps.get(host, time.time()), 'facts': facts}
            target = self.path / f"{host}.json"
            tmp = target.with_suffix('.json.tmp')
            tmp.write_text(json.dumps(entry, indent=2, default=str), encoding='utf-8')
            tmp.replace(target)
