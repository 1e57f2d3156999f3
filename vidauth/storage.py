from __future__ import annotations

import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import asdict
from pathlib import Path

from .models import Credential, PKCEFlowState


class CredentialStore(ABC):
    """Durable home of the single credential record; survives restarts."""

    @abstractmethod
    def load(self) -> Credential | None:
        raise NotImplementedError

    @abstractmethod
    def save(self, credential: Credential) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:
        raise NotImplementedError


class FlowStateStore(ABC):
    """Transient home of one login attempt's PKCE state."""

    @abstractmethod
    def save(self, flow: PKCEFlowState) -> None:
        raise NotImplementedError

    @abstractmethod
    def pop(self) -> PKCEFlowState | None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._record: dict | None = None

    def load(self) -> Credential | None:
        if self._record is None:
            return None
        return Credential.from_record(self._record)

    def save(self, credential: Credential) -> None:
        self._record = credential.to_record()

    def clear(self) -> None:
        self._record = None


class MemoryFlowStateStore(FlowStateStore):
    def __init__(self) -> None:
        self._flow: PKCEFlowState | None = None

    def save(self, flow: PKCEFlowState) -> None:
        self._flow = flow

    def pop(self) -> PKCEFlowState | None:
        flow, self._flow = self._flow, None
        return flow


class FileCredentialStore(CredentialStore):
    def __init__(self, path: str | Path = ".vidup_credentials.json") -> None:
        self._path = Path(path)

    def load(self) -> Credential | None:
        record = _read_json(self._path)
        if record is None:
            return None
        return Credential.from_record(record)

    def save(self, credential: Credential) -> None:
        _write_json(self._path, credential.to_record())

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


class FileFlowStateStore(FlowStateStore):
    def __init__(self, path: str | Path = ".vidup_flow_state.json") -> None:
        self._path = Path(path)

    def save(self, flow: PKCEFlowState) -> None:
        _write_json(self._path, asdict(flow))

    def pop(self) -> PKCEFlowState | None:
        try:
            record = _read_json(self._path)
        finally:
            self._path.unlink(missing_ok=True)
        if record is None:
            return None
        try:
            return PKCEFlowState(**record)
        except TypeError as error:
            raise RuntimeError("Flow state file is invalid.") from error


def _read_json(path: Path) -> dict | None:
    if not path.exists():
        return None

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise RuntimeError(f"{path.name} is invalid; expected top-level JSON object.")
    return raw


def _write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f"{path.name}.",
        suffix=".tmp",
        dir=path.parent,
    )
    tmp_path = Path(tmp_name)

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
