"""
Model Store Module

This module handles persistence of trained model state. Each model owns a named
slot in a key-value store:
- churn_predictor_model
- ltv_predictor_model
- revenue_forecaster_model
- retention_predictor_model
- anomaly_model
- segmentation_model
"""

import pickle
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .models import ModelConfig, ModelMetrics


class ModelStore(ABC):
    """Key-value store for serialized model state."""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored state for `key`, or None if the slot is empty."""

    @abstractmethod
    def put(self, key: str, state: Dict[str, Any]) -> None:
        """Write `state` to the slot `key`, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the slot `key` if present."""


class InMemoryModelStore(ModelStore):
    """Process-local store; state is pickled so callers never share references."""

    def __init__(self):
        self._slots: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            blob = self._slots.get(key)
        return None if blob is None else pickle.loads(blob)

    def put(self, key: str, state: Dict[str, Any]) -> None:
        blob = pickle.dumps(state)
        with self._lock:
            self._slots[key] = blob

    def delete(self, key: str) -> None:
        with self._lock:
            self._slots.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._slots


class FileModelStore(ModelStore):
    """
    Directory-backed store writing one pickle file per slot.

    Example:
    --------
    >>> store = FileModelStore("models")
    >>> store.put("anomaly_model", {"profiles": {}})
    """

    FILE_SUFFIX = ".pkl"

    def __init__(self, model_dir: Union[str, Path]):
        """
        Parameters:
        -----------
        model_dir : str or Path
            Directory holding the slot files. Created on first write.
        """
        self.model_dir = Path(model_dir)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"Invalid model slot name: {key!r}")
        return self.model_dir / f"{key}{self.FILE_SUFFIX}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, "rb") as f:
            return pickle.load(f)

    def put(self, key: str, state: Dict[str, Any]) -> None:
        self.model_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "wb") as f:
            pickle.dump(state, f)
        tmp_path.replace(path)

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()


class PersistentModel:
    """
    Shared configuration, metrics and save/load behaviour for prediction models.

    Subclasses define STORE_KEY and DEFAULT_CONFIG, and implement
    get_state() / set_state().
    """

    STORE_KEY = ""
    DEFAULT_CONFIG = ModelConfig()

    def __init__(
        self,
        config: Optional[Union[ModelConfig, Mapping[str, Any]]] = None,
        store: Optional[ModelStore] = None,
        verbose: bool = False,
    ):
        self.config = self._merge_config(config)
        self.store = store if store is not None else InMemoryModelStore()
        self.verbose = verbose
        self.metrics: Optional[ModelMetrics] = None
        self._lock = threading.RLock()

    @classmethod
    def _merge_config(cls, config: Optional[Union[ModelConfig, Mapping[str, Any]]]) -> ModelConfig:
        if config is None:
            return cls.DEFAULT_CONFIG.model_copy(deep=True)
        overrides = config.model_dump(exclude_unset=True) if isinstance(config, ModelConfig) else dict(config)
        hyperparameters = {
            **cls.DEFAULT_CONFIG.hyperparameters,
            **(overrides.pop("hyperparameters", None) or {}),
        }
        merged = {**cls.DEFAULT_CONFIG.model_dump(), **overrides, "hyperparameters": hyperparameters}
        return ModelConfig.model_validate(merged)

    def hyperparameter(self, name: str) -> float:
        return self.config.hyperparameters[name]

    @property
    def is_trained(self) -> bool:
        return self.metrics is not None

    def get_state(self) -> Dict[str, Any]:
        raise NotImplementedError

    def set_state(self, state: Dict[str, Any]) -> None:
        raise NotImplementedError

    def save(self) -> None:
        """Write the current state to this model's slot."""
        with self._lock:
            state = self.get_state()
        self.store.put(self.STORE_KEY, state)

    def load(self) -> bool:
        """
        Restore state from this model's slot.

        Returns:
        --------
        True if state was restored, False if the slot was empty or unreadable
        """
        try:
            state = self.store.get(self.STORE_KEY)
            if state is None:
                return False
            self.set_state(state)
            return True
        except Exception as e:
            print(f"  ⚠️ Could not load {self.STORE_KEY}: {e}")
            return False

    def _log(self, message: str) -> None:
        if self.verbose:
            print(message)
