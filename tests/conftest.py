"""Shared pytest fixtures and utilities for stocktake tests."""

from __future__ import annotations

import argparse
import socket
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from mdc_stocktake import cli, core_logic, data_manager  # noqa: E402
from mdc_stocktake.records import Transaction  # noqa: E402

_CONFIG_TEMPLATE = (
    "[Stocktake]\n"
    "LogFile = {log_file}\n"
    "Database = {database}\n"
    "Prompt = TEST $\n\n"
    "[Notifier]\n"
    "Enabled = {enabled}\n"
    "Host = 127.0.0.1\n"
    "Port = {port}\n"
    "ConnectTimeout = 1\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    log_file: Path
    database_file: Path


class RecordingPipeline:
    """Pipeline stand-in that remembers every dispatched transaction."""

    def __init__(self) -> None:
        self.dispatched: List[Transaction] = []
        self.online = False
        self.closed = False
        self.aborted = False

    def start(self) -> None:
        pass

    def dispatch(self, transaction: Transaction) -> None:
        self.dispatched.append(transaction)

    def close(self) -> None:
        self.closed = True

    def abort(self, timeout=None) -> None:
        self.aborted = True


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes config.ini bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        notifier_enabled: bool = False,
        notifier_port: int = 7878,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        log_file = bundle_dir / "stocktake.log"
        database_file = bundle_dir / "inventory.db"
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                log_file=log_file.name if make_relative else log_file,
                database=database_file.name if make_relative else database_file,
                enabled="yes" if notifier_enabled else "no",
                port=notifier_port,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            log_file=log_file,
            database_file=database_file,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    return config_factory()


@pytest.fixture
def settings(config_bundle: ConfigBundle) -> data_manager.ConfigSettings:
    """Parsed settings pointing at files inside a temporary directory."""

    return core_logic.load_settings(config_bundle.config_path)


@pytest.fixture
def classifier(settings: data_manager.ConfigSettings) -> core_logic.Classifier:
    return core_logic.build_classifier(settings)


@pytest.fixture
def pipeline() -> RecordingPipeline:
    return RecordingPipeline()


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    classifier: core_logic.Classifier,
    pipeline: RecordingPipeline,
) -> core_logic.RuntimeContext:
    """Session context whose pipeline only records dispatched transactions."""

    return core_logic.RuntimeContext(settings=settings, classifier=classifier, pipeline=pipeline)


@pytest.fixture
def store_engine(tmp_path: Path):
    """A freshly created inventory store."""

    engine = data_manager.open_store(tmp_path / f"store_{uuid.uuid4().hex}.db")
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def unused_port() -> int:
    """A loopback port with nothing listening on it."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


@pytest.fixture
def loopback_server() -> Iterator[socket.socket]:
    """A listening loopback socket for notification tests."""

    server = socket.create_server(("127.0.0.1", 0))
    server.settimeout(5)
    try:
        yield server
    finally:
        server.close()


@pytest.fixture
def read_all() -> Callable[[socket.socket], bytes]:
    """Accept one connection on a server socket and read until the peer closes it."""

    def _read(server: socket.socket) -> bytes:
        conn, _ = server.accept()
        conn.settimeout(5)
        with conn:
            return b"".join(iter(lambda: conn.recv(4096), b""))

    return _read


@pytest.fixture
def cli_parser():
    """A fresh top-level parser without sub-commands."""

    return cli.build_parser()


@pytest.fixture
def subparsers_action():
    """A bare sub-parser action to register individual commands on."""

    parser = argparse.ArgumentParser(prog="cli")
    return parser.add_subparsers(dest="command")
