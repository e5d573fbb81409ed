"""
Calibration and Trust Persistence.

Provides the load/save contract the engine uses for delay profiles and
trust history:
- Abstract store interface
- In-memory store for tests and one-shot CLI runs
- Local filesystem store: JSON profiles with atomic writes,
  SQLite-backed trust history
- Thread-safe operations
"""

import json
import logging
import re
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from chronofuse.alignment.delay import DelayProfile
from chronofuse.exceptions import MissingCalibrationError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class CalibrationStore(ABC):
    """Abstract base class for profile and trust storage."""

    @abstractmethod
    def load_profile(self, sensor_id: str) -> DelayProfile:
        """
        Load a sensor's delay profile.

        Args:
            sensor_id: Sensor identifier

        Returns:
            The stored DelayProfile

        Raises:
            MissingCalibrationError: If no profile is stored
        """
        pass

    @abstractmethod
    def save_profile(self, profile: DelayProfile) -> None:
        """Store or replace a delay profile."""
        pass

    @abstractmethod
    def save_trust(self, sensor_id: str, score: float, timestamp: Optional[float] = None) -> None:
        """Append a trust score to a sensor's history."""
        pass

    @abstractmethod
    def load_trust(self, sensor_id: str) -> Optional[float]:
        """Most recent trust score, None if never saved."""
        pass

    @abstractmethod
    def trust_history(self, sensor_id: str, limit: Optional[int] = None) -> List[Tuple[float, float]]:
        """(timestamp, score) pairs, oldest first, optionally the last `limit`."""
        pass

    @abstractmethod
    def list_profiles(self) -> List[str]:
        """Sensor ids with a stored profile."""
        pass

    @abstractmethod
    def list_trust_sensors(self) -> List[str]:
        """Sensor ids with recorded trust history."""
        pass

    def has_profile(self, sensor_id: str) -> bool:
        return sensor_id in self.list_profiles()


class InMemoryCalibrationStore(CalibrationStore):
    """
    Process-local store.
    """

    def __init__(self, profiles: Optional[Dict[str, DelayProfile]] = None):
        self._profiles: Dict[str, DelayProfile] = dict(profiles or {})
        self._trust: Dict[str, List[Tuple[float, float]]] = {}
        self._lock = threading.Lock()

    def load_profile(self, sensor_id: str) -> DelayProfile:
        with self._lock:
            profile = self._profiles.get(sensor_id)
        if profile is None:
            raise MissingCalibrationError(sensor_id)
        return profile

    def save_profile(self, profile: DelayProfile) -> None:
        with self._lock:
            self._profiles[profile.sensor_id] = profile

    def save_trust(self, sensor_id: str, score: float, timestamp: Optional[float] = None) -> None:
        timestamp = time.time() if timestamp is None else timestamp
        with self._lock:
            self._trust.setdefault(sensor_id, []).append((float(timestamp), float(score)))

    def load_trust(self, sensor_id: str) -> Optional[float]:
        with self._lock:
            history = self._trust.get(sensor_id)
            return history[-1][1] if history else None

    def trust_history(self, sensor_id: str, limit: Optional[int] = None) -> List[Tuple[float, float]]:
        with self._lock:
            history = list(self._trust.get(sensor_id, []))
        return history[-limit:] if limit else history

    def list_profiles(self) -> List[str]:
        with self._lock:
            return sorted(self._profiles)

    def list_trust_sensors(self) -> List[str]:
        with self._lock:
            return sorted(self._trust)


class LocalCalibrationStore(CalibrationStore):
    """
    Local filesystem store.

    Layout:
    base_path/
      profiles/
        <sensor_id>.json   # DelayProfile
      trust.db             # SQLite trust history
    """

    def __init__(self, base_path: Path, use_atomic_writes: bool = True):
        """
        Initialize local store.

        Args:
            base_path: Base directory for storage
            use_atomic_writes: Write profiles to a temp file then rename
        """
        self.base_path = Path(base_path)
        self.use_atomic_writes = use_atomic_writes
        self.profile_dir = self.base_path / "profiles"
        self.profile_dir.mkdir(parents=True, exist_ok=True)
        self._db_path = self.base_path / "trust.db"
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize SQLite database for trust history."""
        with sqlite3.connect(str(self._db_path)) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trust_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sensor_id TEXT NOT NULL,
                    recorded_at REAL NOT NULL,
                    score REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_trust_sensor
                ON trust_history(sensor_id, id)
                """
            )
            conn.commit()

    def _profile_path(self, sensor_id: str) -> Path:
        return self.profile_dir / f"{_UNSAFE_CHARS.sub('_', sensor_id)}.json"

    def load_profile(self, sensor_id: str) -> DelayProfile:
        path = self._profile_path(sensor_id)
        if not path.exists():
            raise MissingCalibrationError(sensor_id)
        with open(path, "r") as f:
            data = json.load(f)
        # Sanitized names may collide
        if data.get("sensor_id") != sensor_id:
            raise MissingCalibrationError(sensor_id)
        return DelayProfile.from_dict(data)

    def save_profile(self, profile: DelayProfile) -> None:
        path = self._profile_path(profile.sensor_id)
        with self._lock:
            if self.use_atomic_writes:
                temp_path = path.with_suffix(".json.tmp")
                with open(temp_path, "w") as f:
                    json.dump(profile.to_dict(), f, indent=2)
                temp_path.replace(path)
            else:
                with open(path, "w") as f:
                    json.dump(profile.to_dict(), f, indent=2)
        logger.debug(f"Saved delay profile for {profile.sensor_id} to {path}")

    def save_trust(self, sensor_id: str, score: float, timestamp: Optional[float] = None) -> None:
        timestamp = time.time() if timestamp is None else timestamp
        with self._lock:
            with sqlite3.connect(str(self._db_path)) as conn:
                conn.execute(
                    "INSERT INTO trust_history (sensor_id, recorded_at, score) VALUES (?, ?, ?)",
                    (sensor_id, float(timestamp), float(score)),
                )
                conn.commit()

    def load_trust(self, sensor_id: str) -> Optional[float]:
        with sqlite3.connect(str(self._db_path)) as conn:
            row = conn.execute(
                "SELECT score FROM trust_history WHERE sensor_id = ? ORDER BY id DESC LIMIT 1",
                (sensor_id,),
            ).fetchone()
        return float(row[0]) if row else None

    def trust_history(self, sensor_id: str, limit: Optional[int] = None) -> List[Tuple[float, float]]:
        with sqlite3.connect(str(self._db_path)) as conn:
            if limit:
                rows = conn.execute(
                    """
                    SELECT recorded_at, score FROM (
                        SELECT id, recorded_at, score FROM trust_history
                        WHERE sensor_id = ? ORDER BY id DESC LIMIT ?
                    ) ORDER BY id ASC
                    """,
                    (sensor_id, int(limit)),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT recorded_at, score FROM trust_history WHERE sensor_id = ? ORDER BY id ASC",
                    (sensor_id,),
                ).fetchall()
        return [(float(t), float(s)) for t, s in rows]

    def list_profiles(self) -> List[str]:
        sensor_ids = []
        for path in sorted(self.profile_dir.glob("*.json")):
            with open(path, "r") as f:
                sensor_ids.append(json.load(f)["sensor_id"])
        return sorted(sensor_ids)

    def has_profile(self, sensor_id: str) -> bool:
        try:
            self.load_profile(sensor_id)
        except MissingCalibrationError:
            return False
        return True

    def list_trust_sensors(self) -> List[str]:
        with sqlite3.connect(str(self._db_path)) as conn:
            rows = conn.execute("SELECT DISTINCT sensor_id FROM trust_history").fetchall()
        return sorted(r[0] for r in rows)
