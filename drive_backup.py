#!/usr/bin/env python3
"""
Google Drive Backup Tool
Signs in with a Google account, creates a backup folder in Drive and uploads a local file into it.
Each run walks a fixed sequence of steps and stops at the first failure.
"""

import os
import sys
import json
import logging
import argparse
import mimetypes
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import List, Optional

from backup_errors import BackupError
from drive_auth import CredentialExchanger, IdentityBroker, Scope, load_flow
from drive_storage import DEFAULT_CHUNK_SIZE, RemoteStorageClient

logger = logging.getLogger(__name__)

# Configuration
CONFIG_FILE = 'backup_config.json'
DEFAULT_CONTENT_TYPE = 'application/octet-stream'
LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


@dataclass
class BackupConfig:
    """Configuration for a backup run."""
    client_secrets_file: str = 'credentials.json'
    folder_name: str = 'Backup Folder'
    parent_folder_id: Optional[str] = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    enable_resumable: bool = True
    consent_timeout: int = 300  # seconds to wait for the browser sign-in
    consent_port: int = 0  # 0 picks a free port
    open_browser: bool = True
    login_hint: Optional[str] = None
    log_file: Optional[str] = None
    debug_mode: bool = False


class WorkflowState(Enum):
    IDLE = 'idle'
    AWAITING_IDENTITY = 'awaiting_identity'
    AUTHENTICATING = 'authenticating'
    CREATING_CONTAINER = 'creating_container'
    UPLOADING = 'uploading'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class BackupResult:
    """Outcome of one backup run."""
    state: WorkflowState
    container_id: Optional[str] = None
    object_id: Optional[str] = None
    error: Optional[BackupError] = None
    failed_state: Optional[WorkflowState] = None
    history: List[WorkflowState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is WorkflowState.DONE


def guess_content_type(name: str) -> str:
    content_type, _ = mimetypes.guess_type(name)
    return content_type or DEFAULT_CONTENT_TYPE


class DriveBackup:
    """One sign-in, one folder, one upload."""

    def __init__(self, config: BackupConfig, broker, exchanger, storage):
        self.config = config
        self.broker = broker
        self.exchanger = exchanger
        self.storage = storage
        self.state = WorkflowState.IDLE
        self.history: List[WorkflowState] = [WorkflowState.IDLE]

    @classmethod
    def from_config(cls, config: BackupConfig) -> 'DriveBackup':
        """Wire the Google sign-in and Drive clients described by ``config``."""
        storage = RemoteStorageClient(chunk_size=config.chunk_size, resumable=config.enable_resumable)
        flow = load_flow(config, Scope.DRIVE_FILE)
        broker = IdentityBroker(
            flow,
            login_hint=config.login_hint,
            timeout=config.consent_timeout,
            port=config.consent_port,
            open_browser=config.open_browser,
        )
        return cls(config, broker, CredentialExchanger(flow), storage)

    def _advance(self, state: WorkflowState):
        logger.debug("Backup state: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def run(self, source, name: Optional[str] = None, content_type: Optional[str] = None) -> BackupResult:
        """Run the whole backup. Failures end the run in FAILED and are returned, not raised."""
        if self.state is not WorkflowState.IDLE:
            raise RuntimeError("A DriveBackup instance can only run once")

        if name is None:
            if not isinstance(source, (str, os.PathLike)):
                raise ValueError("A name is required when uploading from a stream")
            name = os.path.basename(os.fspath(source))
        if content_type is None:
            content_type = guess_content_type(name)

        container = None
        try:
            self._advance(WorkflowState.AWAITING_IDENTITY)
            print("🔐 Waiting for Google sign-in...")
            assertion = self.broker.request_identity()

            self._advance(WorkflowState.AUTHENTICATING)
            session = self.exchanger.exchange(assertion)
            client = self.exchanger.authorize(session, Scope.DRIVE_FILE)
            print(f"   ✅ Signed in as {client.account}")

            self._advance(WorkflowState.CREATING_CONTAINER)
            container = self.storage.create_container(
                client, self.config.folder_name, self.config.parent_folder_id
            )
            print(f"📁 Created folder: {container.name} (ID: {container.id})")

            self._advance(WorkflowState.UPLOADING)
            uploaded = self.storage.upload_object(client, container, name, source, content_type)
            print(f"✅ Uploaded: {uploaded.name} (ID: {uploaded.id})")

        except BackupError as e:
            return self._fail(e, container)
        except Exception:
            failed_state = self.state
            self._advance(WorkflowState.FAILED)
            logger.exception("Backup crashed while %s", failed_state.value)
            raise

        self._advance(WorkflowState.DONE)
        return BackupResult(
            state=self.state,
            container_id=container.id,
            object_id=uploaded.id,
            history=list(self.history),
        )

    def _fail(self, error: BackupError, container) -> BackupResult:
        failed_state = self.state
        self._advance(WorkflowState.FAILED)
        logger.error("Backup failed while %s: %s: %s", failed_state.value, type(error).__name__, error)
        return BackupResult(
            state=self.state,
            container_id=container.id if container else None,
            error=error,
            failed_state=failed_state,
            history=list(self.history),
        )

    def submit(self, executor: Executor, source, name: Optional[str] = None,
               content_type: Optional[str] = None) -> Future:
        """Run the backup as a single task on ``executor``."""
        return executor.submit(self.run, source, name, content_type)


def setup_logging(debug: bool = False, log_file: Optional[str] = None):
    """Send log records to stderr and, optionally, to a file."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # googleapiclient is chatty at DEBUG
    logging.getLogger('googleapiclient.discovery_cache').setLevel(logging.ERROR)


def run_authentication_test(config: BackupConfig) -> bool:
    """Sign in and build a Drive client without touching any files."""
    print("=" * 70)
    print("🔐 GOOGLE DRIVE AUTHENTICATION TEST")
    print("=" * 70)

    try:
        backup = DriveBackup.from_config(config)
        print("✅ OAuth client loaded")
    except (BackupError, ValueError) as e:
        print(f"❌ Could not load OAuth client: {e}")
        logger.error("Authentication test failed: %s", e)
        return False

    try:
        assertion = backup.broker.request_identity()
        print("✅ Consent received")
        session = backup.exchanger.exchange(assertion)
        print("✅ Token exchange successful")
        client = backup.exchanger.authorize(session, Scope.DRIVE_FILE)
        print("✅ Drive client ready")
    except BackupError as e:
        print(f"❌ {type(e).__name__}: {e}")
        logger.error("Authentication test failed: %s: %s", type(e).__name__, e)
        return False

    print("\n" + "=" * 70)
    print("🎉 AUTHENTICATION TEST PASSED!")
    print(f"   Account: {client.account}")
    print(f"   Granted scopes: {', '.join(sorted(session.granted_scopes)) or 'unknown'}")
    print("=" * 70)
    return True


def load_config() -> BackupConfig:
    """Load configuration from file or create default."""
    if not os.path.exists(CONFIG_FILE):
        return BackupConfig()

    with open(CONFIG_FILE, 'r') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{CONFIG_FILE} must hold a JSON object")

    known = {f.name for f in fields(BackupConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown keys in %s: %s", CONFIG_FILE, ', '.join(unknown))
    return BackupConfig(**{k: v for k, v in data.items() if k in known})


def save_config(config: BackupConfig):
    """Save configuration to file."""
    with open(CONFIG_FILE, 'w') as f:
        json.dump(config.__dict__, f, indent=2)


def positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive number, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Google Drive Backup Tool')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    backup_parser = subparsers.add_parser('backup', help='Upload a file into a new Drive folder')
    backup_parser.add_argument('--file', required=True, help='Local file to upload')
    backup_parser.add_argument('--name', help='Name for the file in Drive (default: local file name)')
    backup_parser.add_argument('--folder-name', help='Name of the folder to create')
    backup_parser.add_argument('--parent', help='Drive folder ID to create the folder in')
    backup_parser.add_argument('--content-type', help='Content type of the upload (default: guessed from name)')
    backup_parser.add_argument('--chunk-size', type=positive_int, help='Upload chunk size in bytes (default: 8MB)')
    backup_parser.add_argument('--disable-resumable', action='store_true', help='Send the file in a single request')
    _add_auth_arguments(backup_parser)

    auth_parser = subparsers.add_parser('auth-test', help='Test Google sign-in')
    _add_auth_arguments(auth_parser)

    subparsers.add_parser('config', help='Write the configuration file')

    return parser


def _add_auth_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('--credentials', help='OAuth client secrets file (default: credentials.json)')
    parser.add_argument('--login-hint', help='Email of the account to preselect on the consent screen')
    parser.add_argument('--timeout', type=int, help='Seconds to wait for sign-in (default: 300)')
    parser.add_argument('--port', type=int, help='Local port for the sign-in redirect (default: any free port)')
    parser.add_argument('--no-browser', action='store_true', help='Print the sign-in URL instead of opening a browser')
    parser.add_argument('--log-file', help='Also write log records to this file')
    parser.add_argument('--debug', action='store_true', help='Enable detailed debugging output')


def apply_arguments(config: BackupConfig, args: argparse.Namespace) -> BackupConfig:
    """Override configuration values with command line flags that were given."""
    overrides = {
        'client_secrets_file': getattr(args, 'credentials', None),
        'login_hint': getattr(args, 'login_hint', None),
        'consent_timeout': getattr(args, 'timeout', None),
        'consent_port': getattr(args, 'port', None),
        'log_file': getattr(args, 'log_file', None),
        'folder_name': getattr(args, 'folder_name', None),
        'parent_folder_id': getattr(args, 'parent', None),
        'chunk_size': getattr(args, 'chunk_size', None),
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)

    if getattr(args, 'no_browser', False):
        config.open_browser = False
    if getattr(args, 'disable_resumable', False):
        config.enable_resumable = False
    if getattr(args, 'debug', False):
        config.debug_mode = True
    return config


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in ('backup', 'auth-test', 'config'):
        parser.print_help()
        return

    try:
        config = load_config()
    except (OSError, ValueError) as e:
        logger.error("Could not load %s: %s", CONFIG_FILE, e)
        print(f"❌ Could not load {CONFIG_FILE}: {e}")
        sys.exit(1)

    if args.command == 'config':
        save_config(config)
        print(f"✅ Configuration saved to {CONFIG_FILE}")
        return

    config = apply_arguments(config, args)
    setup_logging(config.debug_mode, config.log_file)

    if args.command == 'auth-test':
        sys.exit(0 if run_authentication_test(config) else 1)

    print("🚀 Google Drive Backup Tool")
    print("=" * 70)
    try:
        backup = DriveBackup.from_config(config)
    except (BackupError, ValueError) as e:
        logger.error("Backup could not start: %s", e)
        print(f"❌ Backup failed: {e}")
        sys.exit(1)

    result = backup.run(args.file, name=args.name, content_type=args.content_type)

    print("=" * 70)
    if result.ok:
        print("🎉 Backup completed!")
        print(f"   📁 Folder ID: {result.container_id}")
        print(f"   📄 File ID: {result.object_id}")
        return

    print(f"❌ Backup failed while {result.failed_state.value.replace('_', ' ')}: {result.error}")
    if result.container_id:
        print(f"   📁 Folder {result.container_id} was created but the upload did not finish")
    sys.exit(1)


if __name__ == "__main__":
    main()
