#!/usr/bin/env -S python3 -u

"""
Barman Exporter

Description:
---------------------

Prometheus exporter publishing the result of `barman check` for every
server barman knows about:
- Periodic listing of barman servers and per-server checks
- Command execution through sudo as the barman user
- Optional parallel checks
- Metrics reset and refresh when the barman configuration directory changes
- Health check endpoint with cycle statistics
- Systemd integration

Usage:
---------------------
1. Allow the exporter user to run barman through sudo as the barman user
2. Optionally create a YAML settings file (see Configuration)
3. Run the script directly or via systemd service
4. Monitor metrics at http://localhost:9706/metrics
5. Check service health at http://localhost:9706/health

Configuration:
---------------------

Environment variables:
    SUDO_BINARY_PATH        path to sudo binary (default: /usr/bin/sudo)
    BARMAN_BINARY_PATH      path to barman binary (default: /usr/bin/barman)
    BARMAN_USER_NAME        user barman is executed as (default: barman)
    BARMAN_CONFIG_DIR       directory with barman server configs (default: /etc/barman.d)
    BARMAN_EXPORTER_CONFIG  optional path to the YAML settings file

Command line flags:
    --parallel-check        check different backups in parallel
    --scrape-interval N     seconds between check cycles (default: 60)
    --config PATH           YAML settings file
    --version               print version information and exit

Optional YAML settings file (all keys optional):

exporter:
    metrics_port: 9706       # HTTP port for /metrics and /health
    listen_address: ""       # Bind address, empty for all interfaces
    collection:
        max_workers: 4           # Concurrent checks with --parallel-check
        failure_threshold: 20    # Consecutive listing failures before unhealthy
        watch_queue_size: 64     # Pending filesystem events kept
    logging:
        level: "INFO"            # Main logging level
        console_level: "INFO"    # Console output level
        file: null               # Rotating log file, disabled when unset
        file_level: "DEBUG"      # File logging level
        journal_level: "WARNING" # Systemd journal level
        max_bytes: 10485760      # Log file size limit (10MB)
        backup_count: 3          # Log file rotation count
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

Precedence: defaults, then the settings file, then environment variables,
then command line flags.

Exported metrics:
---------------------
barman_check_exit_code{backup="<server>"}
    0 when `barman check <server>` succeeded, 1 when it failed.

Health Check API:
---------------------
GET /health
Returns service status, cycle statistics and the current check results.

Response Codes:
    200: Service healthy
    503: Server listing failed failure_threshold times in a row
    404: Invalid endpoint

Dependencies:
---------------------
- Python 3.11+
- prometheus_client
- pyyaml
- watchdog
- cysystemd (for systemd integration)

Notes:
---------------------
- All timestamps are in UTC
- Commands have no timeout; a hung barman call blocks its check
- A failed server listing leaves previous results in place until the
  next configuration change resets them
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import argparse
import asyncio
import json
import logging
import os
import shlex
import signal
import sys
import threading
import time
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
)
from wsgiref.simple_server import WSGIRequestHandler, make_server

# Third party imports
from cysystemd.daemon import notify, Notification
from cysystemd import journal
from prometheus_client import (
    CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, generate_latest
)
from watchdog.events import (
    EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED, FileSystemEvent, FileSystemEventHandler
)
from watchdog.observers import Observer
import yaml

__version__ = "1.0.0"
__commit__ = "unknown"

LOGGER_NAME = "barman_exporter"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterError(Exception):
    """Base class for exporter errors."""
    pass

class ConfigurationError(ExporterError):
    """Error in exporter settings."""
    pass

class WatcherError(ExporterError):
    """Configuration directory watch could not be established."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file locations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())

    @property
    def script_dir(self) -> Path:
        """Directory containing the script."""
        return self.script_path.parent

    @property
    def base_name(self) -> str:
        """Base name without extension."""
        return self.script_path.stem

    @property
    def default_config_path(self) -> Path:
        """Settings file looked up next to the script."""
        return self.script_dir / f"{self.base_name}.yml"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Exporter settings assembled from defaults, YAML, environment and flags."""

    # barman invocation defaults
    DEFAULT_SUDO_BINARY_PATH = '/usr/bin/sudo'
    DEFAULT_BARMAN_BINARY_PATH = '/usr/bin/barman'
    DEFAULT_BARMAN_USER_NAME = 'barman'
    DEFAULT_BARMAN_CONFIG_DIR = '/etc/barman.d'

    DEFAULT_METRICS_PORT = 9706
    DEFAULT_LISTEN_ADDRESS = ''
    DEFAULT_SCRAPE_INTERVAL = 60
    DEFAULT_MAX_WORKERS = 4
    DEFAULT_FAILURE_THRESHOLD = 20
    DEFAULT_WATCH_QUEUE_SIZE = 64

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_FILE = None
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    LOG_LEVELS = ('DEBUG', 'VERBOSE', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

    # Environment variable -> barman setting
    ENVIRONMENT = {
        'SUDO_BINARY_PATH': 'sudo_binary_path',
        'BARMAN_BINARY_PATH': 'barman_binary_path',
        'BARMAN_USER_NAME': 'barman_user_name',
        'BARMAN_CONFIG_DIR': 'barman_config_dir',
    }
    CONFIG_PATH_VARIABLE = 'BARMAN_EXPORTER_CONFIG'

    def __init__(
        self,
        source: ProgramSource,
        environ: Optional[Mapping[str, str]] = None,
        config_path: Optional[Path] = None
    ):
        """Initialize settings with defaults; call load() to read overrides."""
        self._source = source
        self._environ = os.environ if environ is None else environ
        self._explicit_config_path = config_path
        self._config = {
            'exporter': self._get_exporter_defaults(),
            'barman': self._get_barman_defaults()
        }
        self.config_path: Optional[Path] = None
        self.parallel_check = False
        self.scrape_interval: float = self.DEFAULT_SCRAPE_INTERVAL
        self._running_under_systemd = bool(self._environ.get('INVOCATION_ID'))
        self._start_time = self.now_utc()

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'metrics_port': self.DEFAULT_METRICS_PORT,
            'listen_address': self.DEFAULT_LISTEN_ADDRESS,
            'collection': {
                'max_workers': self.DEFAULT_MAX_WORKERS,
                'failure_threshold': self.DEFAULT_FAILURE_THRESHOLD,
                'watch_queue_size': self.DEFAULT_WATCH_QUEUE_SIZE
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'file': self.DEFAULT_LOG_FILE,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def _get_barman_defaults(self) -> Dict[str, str]:
        return {
            'sudo_binary_path': self.DEFAULT_SUDO_BINARY_PATH,
            'barman_binary_path': self.DEFAULT_BARMAN_BINARY_PATH,
            'barman_user_name': self.DEFAULT_BARMAN_USER_NAME,
            'barman_config_dir': self.DEFAULT_BARMAN_CONFIG_DIR
        }

    def load(self) -> None:
        """Load the settings file and environment overrides."""
        new_config = {
            'exporter': self._get_exporter_defaults(),
            'barman': self._get_barman_defaults()
        }

        config_path = self._resolve_config_path()
        if config_path is not None:
            try:
                with open(config_path) as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(f"Failed to load config file {config_path}: {e}")

            if not isinstance(file_config, dict):
                raise ConfigurationError(f"Config file {config_path} must contain a mapping")

            exporter_section = file_config.get('exporter') or {}
            self._validate_exporter_section(exporter_section)
            new_config['exporter'] = self._merge_with_defaults(
                new_config['exporter'],
                exporter_section
            )

        # Empty values fall back to defaults
        for variable, key in self.ENVIRONMENT.items():
            value = self._environ.get(variable)
            if value:
                new_config['barman'][key] = value

        self._config = new_config
        self.config_path = config_path

    def apply_args(self, args: argparse.Namespace) -> None:
        """Apply command line flags on top of loaded settings."""
        if args.scrape_interval <= 0:
            raise ConfigurationError(
                f"Invalid scrape interval {args.scrape_interval}: must be positive"
            )
        self.scrape_interval = args.scrape_interval
        self.parallel_check = args.parallel_check

    def _resolve_config_path(self) -> Optional[Path]:
        """Find the settings file, if any."""
        if self._explicit_config_path is not None:
            path = Path(self._explicit_config_path)
        elif self._environ.get(self.CONFIG_PATH_VARIABLE):
            path = Path(self._environ[self.CONFIG_PATH_VARIABLE])
        else:
            path = self._source.default_config_path
            return path if path.is_file() else None

        if not path.is_file():
            raise ConfigurationError(f"Config file {path} not found")
        return path

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    @staticmethod
    def _is_int(value: Any) -> bool:
        return isinstance(value, int) and not isinstance(value, bool)

    def _validate_exporter_section(self, config: Dict[str, Any]) -> None:
        """Basic validation of exporter configuration."""
        if not isinstance(config, dict):
            raise ConfigurationError("'exporter' section must be a dictionary")

        if 'metrics_port' in config:
            metrics_port = config['metrics_port']
            if not self._is_int(metrics_port) or metrics_port < 1 or metrics_port > 65535:
                raise ConfigurationError(f"Invalid metrics_port {metrics_port}")

        if 'listen_address' in config and not isinstance(config['listen_address'], str):
            raise ConfigurationError(f"Invalid listen_address {config['listen_address']!r}")

        collection = config.get('collection', {})
        if not isinstance(collection, dict):
            raise ConfigurationError("'collection' section must be a dictionary")
        for key in ('max_workers', 'failure_threshold', 'watch_queue_size'):
            if key in collection:
                value = collection[key]
                if not self._is_int(value) or value < 1:
                    raise ConfigurationError(f"Invalid {key} {value}: must be a positive integer")

        logging_config = config.get('logging', {})
        if not isinstance(logging_config, dict):
            raise ConfigurationError("'logging' section must be a dictionary")
        for key in ('level', 'console_level', 'file_level', 'journal_level'):
            if key in logging_config:
                level = logging_config[key]
                if not isinstance(level, str) or level.upper() not in self.LOG_LEVELS:
                    raise ConfigurationError(
                        f"Invalid logging {key} {level!r}. "
                        f"Must be one of: {list(self.LOG_LEVELS)}"
                    )
        for key in ('max_bytes', 'backup_count'):
            if key in logging_config:
                value = logging_config[key]
                if not self._is_int(value) or value < 0:
                    raise ConfigurationError(f"Invalid logging {key} {value}")

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    @property
    def start_time(self) -> datetime:
        return self._start_time

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def exporter(self) -> Dict[str, Any]:
        return self._config['exporter']

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.exporter.get('logging', {})

    @property
    def collection(self) -> Dict[str, Any]:
        """Get collection configuration."""
        return self.exporter.get('collection', {})

    @property
    def metrics_port(self) -> int:
        return self.exporter.get('metrics_port', self.DEFAULT_METRICS_PORT)

    @property
    def listen_address(self) -> str:
        return self.exporter.get('listen_address', self.DEFAULT_LISTEN_ADDRESS)

    @property
    def max_workers(self) -> int:
        """Get maximum number of concurrent checks."""
        return self.collection.get('max_workers', self.DEFAULT_MAX_WORKERS)

    @property
    def failure_threshold(self) -> int:
        """Get consecutive listing failures tolerated before unhealthy."""
        return self.collection.get('failure_threshold', self.DEFAULT_FAILURE_THRESHOLD)

    @property
    def watch_queue_size(self) -> int:
        return self.collection.get('watch_queue_size', self.DEFAULT_WATCH_QUEUE_SIZE)

    @property
    def sudo_binary_path(self) -> str:
        return self._config['barman']['sudo_binary_path']

    @property
    def barman_binary_path(self) -> str:
        return self._config['barman']['barman_binary_path']

    @property
    def barman_user_name(self) -> str:
        return self._config['barman']['barman_user_name']

    @property
    def barman_config_dir(self) -> Path:
        return Path(self._config['barman']['barman_config_dir'])

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    # Verbose logging config
    VERBOSE_DEBUG = True
    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Enhanced Logger class adding verbose debugging capabilities"""

        def verbose(
            self,
            msg: Union[str, Callable[[], str]],
            *args: Any,
            **kwargs: Any
        ) -> None:
            """Log verbose debug messages with deferred evaluation of callables."""

            if not ProgramLogger.VERBOSE_DEBUG:
                return
            if not self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                return

            if callable(msg):
                msg = msg()
            self.log(ProgramLogger.VERBOSE_LEVEL, msg, *args, **kwargs)

    def __init__(self, config: ProgramConfig):
        """Initialize logging configuration.

        Args:
            config: Program configuration
        """

        # Set VerboseLogger as the default logger class
        logging.addLevelName(self.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(self.VerboseLogger)

        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}
        self._logger = self._setup_logging()

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration with defaults filled in."""
        logging_config = self.config.logging
        return {
            'level': logging_config.get('level', self.config.DEFAULT_LOG_LEVEL).upper(),
            'console_level': logging_config.get('console_level', self.config.DEFAULT_LOG_CONSOLE_LEVEL).upper(),
            'file': logging_config.get('file', self.config.DEFAULT_LOG_FILE),
            'file_level': logging_config.get('file_level', self.config.DEFAULT_LOG_FILE_LEVEL).upper(),
            'journal_level': logging_config.get('journal_level', self.config.DEFAULT_LOG_JOURNAL_LEVEL).upper(),
            'max_bytes': logging_config.get('max_bytes', self.config.DEFAULT_LOG_MAX_BYTES),
            'backup_count': logging_config.get('backup_count', self.config.DEFAULT_LOG_BACKUP_COUNT),
            'format': logging_config.get('format', self.config.DEFAULT_LOG_FORMAT),
            'date_format': logging_config.get('date_format', self.config.DEFAULT_LOG_DATE_FORMAT)
        }

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from settings.

        Creates and configures:
        - Base logger
        - Console handler
        - File handler with rotation (if a log file is configured)
        - Journal handler (if running under systemd)

        Returns:
            Configured logging.Logger instance

        Note:
            If handler setup fails, ensures at least basic console logging
            is available as a fallback.
        """
        logger = logging.getLogger(LOGGER_NAME)
        logger.handlers.clear()

        log_settings = self._get_logging_config()
        logger.setLevel(log_settings['level'])

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        try:
            # Console handler
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_settings['console_level'])
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
            self._handlers['console'] = console_handler

            # File handler
            if log_settings['file']:
                file_handler = RotatingFileHandler(
                    log_settings['file'],
                    maxBytes=log_settings['max_bytes'],
                    backupCount=log_settings['backup_count']
                )
                file_handler.setLevel(log_settings['file_level'])
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
                self._handlers['file'] = file_handler

            # Journal handler for systemd
            if self.config.running_under_systemd:
                journal_handler = journal.JournaldLogHandler()
                journal_handler.setLevel(log_settings['journal_level'])
                journal_handler.setFormatter(formatter)
                logger.addHandler(journal_handler)
                self._handlers['journal'] = journal_handler

        except Exception as e:
            if not logger.handlers:
                basic_handler = logging.StreamHandler(sys.stdout)
                basic_handler.setFormatter(logging.Formatter(self.config.DEFAULT_LOG_FORMAT))
                logger.addHandler(basic_handler)
                self._handlers['console'] = basic_handler
            print(f"Failed to setup handlers: {e}, using available handlers", file=sys.stderr)

        return logger

    def close(self) -> None:
        """Close and detach all handlers."""
        for name, handler in list(self._handlers.items()):
            self._logger.removeHandler(handler)
            handler.close()
            del self._handlers[name]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Statistics
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CycleStats:
    """Statistics for check cycles.

    Attributes:
        cycles (int): Completed check cycles
        resets (int): Metric resets triggered by configuration changes
        list_failures (int): Failed server listings
        consecutive_list_failures (int): Current streak of failed listings
        check_successes (int): Successful barman checks
        check_failures (int): Failed barman checks
        last_cycle_time (float): Duration of last cycle in seconds
        total_cycle_time (float): Cumulative cycle time in seconds
        last_cycle_datetime (datetime): End of last cycle
    """
    cycles: int = 0
    resets: int = 0
    list_failures: int = 0
    consecutive_list_failures: int = 0
    check_successes: int = 0
    check_failures: int = 0
    last_cycle_time: float = 0
    total_cycle_time: float = 0
    last_cycle_datetime: Optional[datetime] = None

    def record_list_result(self, success: bool) -> None:
        if success:
            self.consecutive_list_failures = 0
        else:
            self.list_failures += 1
            self.consecutive_list_failures += 1

    def update_cycle_time(self, start_time: float) -> None:
        """Update timing statistics from a time.monotonic() start."""
        cycle_time = time.monotonic() - start_time
        self.cycles += 1
        self.last_cycle_time = cycle_time
        self.total_cycle_time += cycle_time
        self.last_cycle_datetime = ProgramConfig.now_utc()

    def get_average_cycle_time(self) -> float:
        """Calculate average cycle time."""
        return self.total_cycle_time / self.cycles if self.cycles > 0 else 0

    def is_healthy(self, threshold: int) -> bool:
        """Healthy while server listing keeps working."""
        return self.consecutive_list_failures < threshold

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Command Execution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CommandResult:
    """Result of a command execution."""
    output: str
    success: bool
    returncode: Optional[int] = None
    error_message: Optional[str] = None
    execution_time: float = 0
    timestamp: datetime = field(default_factory=ProgramConfig.now_utc)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class CommandExecutor:
    """Runs commands and captures their combined output."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    async def execute(self, argv: Sequence[str]) -> CommandResult:
        """Execute argv without a shell; stderr is merged into the output.

        Never raises for process failures: a command that cannot be started
        or exits non-zero yields an unsuccessful CommandResult.
        """
        command = shlex.join(argv)
        self.logger.verbose(f"Executing command: {command}")
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT
            )
        except OSError as e:
            return CommandResult(
                output='',
                success=False,
                error_message=str(e),
                execution_time=time.monotonic() - start_time
            )

        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await asyncio.shield(process.wait())
            raise

        output = stdout.decode(errors='replace')
        execution_time = time.monotonic() - start_time
        self.logger.verbose(
            f"Command finished with exit status {process.returncode} "
            f"in {execution_time:.3f}s: {command}"
        )

        if process.returncode == 0:
            return CommandResult(
                output=output,
                success=True,
                returncode=0,
                execution_time=execution_time
            )
        return CommandResult(
            output=output,
            success=False,
            returncode=process.returncode,
            error_message=f"exit status {process.returncode}",
            execution_time=execution_time
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class BarmanClient:
    """Issues barman commands through sudo as the barman user."""

    def __init__(self, config: ProgramConfig, executor: CommandExecutor):
        self.config = config
        self.executor = executor

    def build_command(self, *args: str) -> List[str]:
        return [
            self.config.sudo_binary_path,
            f"--user={self.config.barman_user_name}",
            self.config.barman_binary_path,
            *args
        ]

    async def list_servers(self) -> CommandResult:
        """Run `barman list-server --minimal`."""
        return await self.executor.execute(self.build_command('list-server', '--minimal'))

    async def check(self, target: str) -> CommandResult:
        """Run `barman check <target>`."""
        return await self.executor.execute(self.build_command('check', target))


def parse_server_list(output: str) -> List[str]:
    """Split `list-server --minimal` output into server names.

    Only the empty element left by the final newline is dropped; blank lines
    elsewhere come through as empty names.
    """
    names = output.split('\n')
    if names[-1] == '':
        names.pop()
    return names

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metrics Registry
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class BackupStatusRegistry:
    """Check results per backup, guarded by a single lock.

    Owns its own CollectorRegistry so that several instances (tests, multiple
    exporters) never collide in prometheus_client's default registry.
    """

    METRIC_NAME = 'barman_check_exit_code'
    METRIC_DESCRIPTION = 'barman check command exit code result.'
    LABEL_NAME = 'backup'

    def __init__(self):
        self._lock = threading.Lock()
        self._registry = CollectorRegistry()
        self._gauge = Gauge(
            self.METRIC_NAME,
            self.METRIC_DESCRIPTION,
            labelnames=[self.LABEL_NAME],
            registry=self._registry
        )

    def set(self, label: str, value: float) -> None:
        """Create or overwrite the value for one backup."""
        with self._lock:
            self._gauge.labels(label).set(value)

    def reset(self) -> None:
        """Remove every backup."""
        with self._lock:
            self._gauge.clear()

    def snapshot(self) -> Dict[str, float]:
        """Copy of the current backup -> value mapping."""
        with self._lock:
            return {
                sample.labels[self.LABEL_NAME]: sample.value
                for metric in self._gauge.collect()
                for sample in metric.samples
            }

    def render(self) -> bytes:
        """Prometheus text exposition of the current values."""
        with self._lock:
            return generate_latest(self._registry)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Check Cycles
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class BackupPoller:
    """Runs check cycles: list servers, then check each one.

    Cycles are serialized by an asyncio lock, so a reset requested by the
    watcher waits for an in-flight periodic cycle and no write from an older
    cycle lands after the reset. Within a cycle, parallel checks only share
    the registry lock for their individual writes.
    """

    CHECK_OK = 0
    CHECK_FAILED = 1

    def __init__(
        self,
        config: ProgramConfig,
        client: BarmanClient,
        registry: BackupStatusRegistry,
        logger: logging.Logger,
        stats: Optional[CycleStats] = None
    ):
        self.config = config
        self.client = client
        self.registry = registry
        self.logger = logger
        self.stats = stats if stats is not None else CycleStats()
        self._cycle_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(config.max_workers)

    @staticmethod
    def _new_cycle_id() -> int:
        return int(time.time())

    async def run_cycle(self, cycle_id: Optional[int] = None) -> Dict[str, int]:
        """Run one check cycle and return the values written."""
        async with self._cycle_lock:
            return await self._collect(cycle_id or self._new_cycle_id())

    async def refresh(self, reason: str = "configuration change") -> Dict[str, int]:
        """Reset all results, then run one cycle."""
        async with self._cycle_lock:
            cycle_id = self._new_cycle_id()
            self.logger.info(f"[{cycle_id}] reset metrics started: {reason}")

            self.registry.reset()
            self.stats.resets += 1

            results = await self._collect(cycle_id)
            self.logger.info(f"[{cycle_id}] reset metrics completed")
            return results

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run cycles every scrape interval until stop_event is set."""
        self.logger.info(
            f"Periodic check started with {self.config.scrape_interval}s interval"
            f"{' (parallel)' if self.config.parallel_check else ''}"
        )
        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                self.logger.error(f"Error in periodic check: {e}", exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.scrape_interval)
            except asyncio.TimeoutError:
                continue
        self.logger.info("Periodic check stopped")

    async def _collect(self, cycle_id: int) -> Dict[str, int]:
        start_time = time.monotonic()
        targets = await self._list_targets(cycle_id)

        if self.config.parallel_check:
            values = await asyncio.gather(
                *(self._check_bounded(cycle_id, target) for target in targets)
            )
        else:
            values = [await self._check_target(cycle_id, target) for target in targets]

        self.stats.update_cycle_time(start_time)
        self.logger.info(
            f"[{cycle_id}] check completed in {self.stats.last_cycle_time:.2f}s: "
            f"{values.count(self.CHECK_OK)} passed, {values.count(self.CHECK_FAILED)} failed"
        )
        return dict(zip(targets, values))

    async def _list_targets(self, cycle_id: int) -> List[str]:
        self.logger.info(
            f"[{cycle_id}] execute: {shlex.join(self.client.build_command('list-server', '--minimal'))}"
        )
        result = await self.client.list_servers()
        self.stats.record_list_result(result.success)

        if not result.success:
            self.logger.error(f"[{cycle_id}] giving backups list failed: {result.error_message}")
            if result.output:
                self.logger.verbose(f"[{cycle_id}] list-server output: {result.output!r}")
            return []

        targets = parse_server_list(result.output)
        self.logger.info(f"[{cycle_id}] prepared backups list: {targets}")
        return targets

    async def _check_bounded(self, cycle_id: int, target: str) -> int:
        async with self._semaphore:
            return await self._check_target(cycle_id, target)

    async def _check_target(self, cycle_id: int, target: str) -> int:
        """Check one backup and write its result."""
        self.logger.debug(f"[{cycle_id}] get metric for backup: {target}")
        result = await self.client.check(target)
        self.logger.debug(f"[{cycle_id}] got metric for backup: {target}")

        if result.success:
            value = self.CHECK_OK
            self.stats.check_successes += 1
        else:
            value = self.CHECK_FAILED
            self.stats.check_failures += 1
            self.logger.error(f"[{cycle_id}] check failed for backup {target}: {result.error_message}")
            if result.output:
                self.logger.verbose(f"[{cycle_id}] check output for {target}: {result.output!r}")

        self.registry.set(target, value)
        return value

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Configuration Directory Watch
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

STRUCTURAL_EVENT_TYPES = frozenset({
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
})


def is_structural_change(event: FileSystemEvent) -> bool:
    """True for files added, removed, renamed or modified; False for open/close."""
    return event.event_type in STRUCTURAL_EVENT_TYPES

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class FileSignatures:
    """Size and mtime per path, used to drop metadata-only modifications.

    watchdog reports attribute changes (chmod, chown) as modified events;
    those leave size and mtime untouched.
    """

    _UNKNOWN = object()

    def __init__(self):
        self._signatures: Dict[str, Optional[Tuple[int, int]]] = {}

    @staticmethod
    def read(path: Union[str, Path]) -> Optional[Tuple[int, int]]:
        try:
            stat = os.stat(path)
        except OSError:
            return None
        return (stat.st_size, stat.st_mtime_ns)

    def seed(self, directory: Path) -> None:
        """Record the directory itself and its current entries."""
        self.track(str(directory))
        for entry in directory.iterdir():
            self.track(str(entry))

    def track(self, path: str) -> None:
        self._signatures[path] = self.read(path)

    def forget(self, path: str) -> None:
        self._signatures.pop(path, None)

    def content_changed(self, path: str) -> bool:
        """Compare with the recorded signature and record the new one."""
        current = self.read(path)
        previous = self._signatures.get(path, self._UNKNOWN)
        self._signatures[path] = current
        return previous is self._UNKNOWN or previous != current

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ConfigDirectoryWatcher:
    """Resets and refreshes check results when the barman config dir changes.

    The watchdog observer thread only forwards events into a bounded asyncio
    queue; a single consumer task filters them and triggers refreshes.
    """

    WATCH_CHECK_INTERVAL = 5.0  # seconds between observer liveness checks
    OBSERVER_JOIN_TIMEOUT = 5.0

    class _EventForwarder(FileSystemEventHandler):
        """Forwards every watchdog event to the watcher."""

        def __init__(self, watcher: 'ConfigDirectoryWatcher'):
            super().__init__()
            self._watcher = watcher

        def on_any_event(self, event: FileSystemEvent) -> None:
            self._watcher.dispatch(event)

    def __init__(
        self,
        config: ProgramConfig,
        poller: BackupPoller,
        logger: logging.Logger
    ):
        self.directory = config.barman_config_dir
        self.poller = poller
        self.logger = logger
        self._queue_size = config.watch_queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None
        self._signatures = FileSignatures()
        self._observer_failure_logged = False

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Establish the watch; raises WatcherError if that is impossible."""
        try:
            is_dir = self.directory.is_dir()
        except OSError as e:
            raise WatcherError(f"Failed to access config directory {self.directory}: {e}") from e
        if not is_dir:
            raise WatcherError(
                f"Config directory {self.directory} does not exist or is not a directory"
            )

        self._loop = loop or asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._queue_size)

        observer = Observer()
        try:
            self._signatures.seed(self.directory)
            observer.schedule(self._EventForwarder(self), str(self.directory), recursive=False)
            observer.daemon = True
            observer.start()
        except OSError as e:
            raise WatcherError(f"Failed to watch config directory {self.directory}: {e}") from e

        self._observer = observer
        self.logger.info(f"Watching config directory {self.directory}")

    def stop(self) -> None:
        """Stop the observer thread."""
        if not self._observer:
            return

        try:
            self._observer.stop()
            self._observer.join(timeout=self.OBSERVER_JOIN_TIMEOUT)
            if self._observer.is_alive():
                self.logger.warning("Config directory observer failed to stop")
        finally:
            self._observer = None

    def dispatch(self, event: FileSystemEvent) -> None:
        """Hand an event to the consumer; safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._enqueue, event)

    def _enqueue(self, event: FileSystemEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.logger.warning(
                f"Filesystem event queue full ({self._queue_size}), "
                f"dropping {event.event_type} {event.src_path}"
            )

    def qualifies(self, event: FileSystemEvent) -> bool:
        """Whether an event should reset the metrics; keeps signatures current."""
        if not is_structural_change(event):
            return False

        if event.event_type == EVENT_TYPE_MODIFIED:
            return self._signatures.content_changed(event.src_path)

        if event.event_type == EVENT_TYPE_DELETED:
            self._signatures.forget(event.src_path)
        elif event.event_type == EVENT_TYPE_CREATED:
            self._signatures.track(event.src_path)
        elif event.event_type == EVENT_TYPE_MOVED:
            self._signatures.forget(event.src_path)
            self._signatures.track(event.dest_path)
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        """Consume filesystem events until stop_event is set."""
        if self._queue is None:
            raise WatcherError("Config directory watch has not been started")

        stop_wait = asyncio.create_task(stop_event.wait())
        try:
            while not stop_event.is_set():
                self._check_observer()
                next_event = asyncio.create_task(self._queue.get())
                done, _ = await asyncio.wait(
                    {next_event, stop_wait},
                    timeout=self.WATCH_CHECK_INTERVAL,
                    return_when=asyncio.FIRST_COMPLETED
                )
                if next_event not in done:
                    next_event.cancel()
                    continue

                await self._handle(next_event.result())
        finally:
            stop_wait.cancel()
        self.logger.info("Config directory watch stopped")

    async def _handle(self, event: FileSystemEvent) -> None:
        self.logger.verbose(f"fsnotify event: {event.event_type} {event.src_path}")
        try:
            if not self.qualifies(event):
                return

            coalesced = self._drain()
            if coalesced:
                self.logger.verbose(f"Coalesced {coalesced} queued filesystem events")

            await self.poller.refresh(reason=f"{event.event_type} {event.src_path}")
        except Exception as e:
            self.logger.error(
                f"Failed to handle filesystem event {event.event_type} {event.src_path}: {e}",
                exc_info=True
            )

    def _drain(self) -> int:
        """Consume already queued events; one refresh covers them all."""
        drained = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            self.logger.verbose(f"fsnotify event: {event.event_type} {event.src_path}")
            self.qualifies(event)
            drained += 1
        return drained

    def _watch_active(self) -> bool:
        """Observer thread dispatches; each emitter thread reads inotify."""
        observer = self._observer
        return observer.is_alive() and all(
            emitter.is_alive() for emitter in observer.emitters
        )

    def _check_observer(self) -> None:
        if self._observer is None or self._watch_active():
            return
        if not self._observer_failure_logged:
            self.logger.error(f"fsnotify error: watch on {self.directory} is no longer active")
            self._observer_failure_logged = True

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# HTTP Endpoint
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class _LoggingRequestHandler(WSGIRequestHandler):
    """Sends access logs to the exporter logger instead of stderr."""

    def log_message(self, format: str, *args: Any) -> None:
        logging.getLogger(LOGGER_NAME).debug(
            f"{self.address_string()} - {format % args}"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsServer:
    """Serves /metrics and /health.

    Endpoints:
        GET /metrics: Prometheus text exposition of check results
        GET /health: Service health status (JSON)

    Response Format (/health):
        {
            "service": {
                "status": "healthy|unhealthy",
                "up": true,
                ...
            },
            "stats": {
                "cycles": {...},
                "configuration": {...}
            },
            "backups": {"<server>": 0, ...}
        }
    """

    SERVER_THREAD_NAME = "MetricsServer"

    def __init__(
        self,
        config: ProgramConfig,
        registry: BackupStatusRegistry,
        stats: CycleStats,
        logger: logging.Logger
    ):
        self.config = config
        self.registry = registry
        self.stats = stats
        self.logger = logger
        self._server = None
        self._thread = None

    @property
    def port(self) -> Optional[int]:
        """Bound port, None when not running."""
        return self._server.server_port if self._server else None

    def start(self) -> bool:
        """Start the HTTP server in a separate thread."""
        try:
            app = self.create_wsgi_app()
            self._server = make_server(
                self.config.listen_address,
                self.config.metrics_port,
                app,
                handler_class=_LoggingRequestHandler
            )
        except OSError as e:
            self.logger.error(f"http listener failed with error: {e}")
            self._server = None
            return False

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name=self.SERVER_THREAD_NAME,
            daemon=True
        )
        self._thread.start()
        self.logger.info(f"Started metrics server on port {self.port}")
        return True

    def stop(self) -> None:
        """Stop the HTTP server."""

        if not self._server:
            return

        try:
            self.logger.info("Stopping metrics server")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=5)
                if self._thread.is_alive():
                    self.logger.warning("Metrics server thread failed to stop")
        finally:
            self._server = None
            self._thread = None

    def _create_error_response(self, status: str, message: str) -> bytes:
        """Create standardized error response."""
        response = {
            "status": status,
            "error": message,
            "timestamp_utc": self.config.now_utc().isoformat()
        }
        return json.dumps(response, indent=2).encode()

    def _health_response(self, is_healthy: bool) -> Dict[str, Any]:
        stats = self.stats
        return {
            "service": {
                "status": "healthy" if is_healthy else "unhealthy",
                "up": True,
                "current_datetime_utc": self.config.now_utc().isoformat(),
                "service_start_datetime_utc": self.config.start_time.isoformat(),
                "last_cycle_datetime_utc": (
                    stats.last_cycle_datetime.isoformat()
                    if stats.last_cycle_datetime else None
                ),
                "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                "process_id": os.getpid(),
                "version": __version__,
                "systemd_managed": self.config.running_under_systemd
            },
            "stats": {
                "cycles": {
                    "completed": stats.cycles,
                    "resets": stats.resets,
                    "list_failures": stats.list_failures,
                    "consecutive_list_failures": stats.consecutive_list_failures,
                    "failure_threshold": self.config.failure_threshold,
                    "check_successes": stats.check_successes,
                    "check_failures": stats.check_failures,
                    "timing": {
                        "last_cycle_seconds": round(stats.last_cycle_time, 3),
                        "average_cycle_seconds": round(stats.get_average_cycle_time(), 3)
                    }
                },
                "configuration": {
                    "scrape_interval_seconds": self.config.scrape_interval,
                    "parallel_check": self.config.parallel_check,
                    "max_workers": self.config.max_workers,
                    "barman_user": self.config.barman_user_name,
                    "barman_config_dir": str(self.config.barman_config_dir)
                }
            },
            "backups": self.registry.snapshot()
        }

    def create_wsgi_app(self):
        """Create the WSGI application."""
        def app(environ, start_response):
            try:
                path = environ.get('PATH_INFO', '').rstrip('/')

                if path == '/metrics':
                    output = self.registry.render()
                    start_response('200 OK', [
                        ('Content-Type', CONTENT_TYPE_LATEST),
                        ('Content-Length', str(len(output)))
                    ])
                    return [output]

                if path in ('', '/health'):
                    is_healthy = self.stats.is_healthy(self.config.failure_threshold)
                    status = '200 OK' if is_healthy else '503 Service Unavailable'
                    start_response(status, [
                        ('Content-Type', 'application/json'),
                        ('Cache-Control', 'no-cache, no-store, must-revalidate')
                    ])
                    return [json.dumps(self._health_response(is_healthy), indent=2).encode()]

                start_response('404 Not Found', [('Content-Type', 'application/json')])
                return [self._create_error_response("error", "Not Found")]

            except Exception as e:
                self.logger.error(f"HTTP handler error: {e}", exc_info=True)
                start_response(
                    '500 Internal Server Error',
                    [('Content-Type', 'application/json')],
                    sys.exc_info()
                )
                return [self._create_error_response("error", str(e))]

        return app

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class BarmanExporter:
    """Main service class for the barman exporter.

    Owns the check result registry and wires it into the poller, the
    configuration directory watcher and the HTTP server.

    Attributes:
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        shutdown_event (asyncio.Event): Event for coordinating shutdown
        registry (BackupStatusRegistry): Check results
        poller (BackupPoller): Periodic and on-demand check cycles
        watcher (ConfigDirectoryWatcher): Config directory watch
        server (MetricsServer): HTTP endpoint
    """

    SHUTDOWN_TIMEOUT = 30  # seconds

    def __init__(
        self,
        config: ProgramConfig,
        logger: logging.Logger,
        client: Optional[BarmanClient] = None,
        registry: Optional[BackupStatusRegistry] = None
    ):
        self.config = config
        self.logger = logger
        self.shutdown_event = asyncio.Event()
        self.stats = CycleStats()
        self.registry = registry if registry is not None else BackupStatusRegistry()
        self.client = client if client is not None else BarmanClient(config, CommandExecutor(logger))
        self.poller = BackupPoller(config, self.client, self.registry, logger, self.stats)
        self.watcher = ConfigDirectoryWatcher(config, self.poller, logger)
        self.server = MetricsServer(config, self.registry, self.stats, logger)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.shutdown_event.set)

    def _notify(self, notification: Notification) -> None:
        if self.config.running_under_systemd:
            notify(notification)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self.shutdown_event.is_set():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Background task {task.get_name()} failed: {error!r}")
        else:
            self.logger.error(f"Background task {task.get_name()} exited unexpectedly")

    async def _stop_tasks(self, tasks: List[asyncio.Task]) -> None:
        _, pending = await asyncio.wait(tasks, timeout=self.SHUTDOWN_TIMEOUT)
        if pending:
            self.logger.warning(
                f"Cancelling {len(pending)} tasks still running after {self.SHUTDOWN_TIMEOUT}s"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def run(self, install_signal_handlers: bool = True) -> int:
        """Main service loop; returns the process exit status."""
        self._loop = asyncio.get_running_loop()

        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self._handle_signal)
            signal.signal(signal.SIGINT, self._handle_signal)

        try:
            self.watcher.start(self._loop)
        except WatcherError as e:
            self.logger.critical(str(e))
            self._notify(Notification.STOPPING)
            return 1

        # Keep running without an endpoint rather than crash-loop on bind errors
        if not self.server.start():
            self.logger.error("Metrics endpoint unavailable, continuing without it")

        tasks = [
            asyncio.create_task(self.poller.run(self.shutdown_event), name="periodic-check"),
            asyncio.create_task(self.watcher.run(self.shutdown_event), name="config-watch"),
        ]
        for task in tasks:
            task.add_done_callback(self._on_task_done)

        self._notify(Notification.READY)
        self.logger.info("exporter started")

        try:
            await self.shutdown_event.wait()
            self.logger.info("Shutdown event received, stopping service")
            await self._stop_tasks(tasks)
        finally:
            self.watcher.stop()
            self.server.stop()
            self._notify(Notification.STOPPING)
            self.logger.info("Service shutdown complete")

        return 0

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

USAGE_EPILOG = """Supported env variables:
  SUDO_BINARY_PATH        path to sudo binary (default: /usr/bin/sudo)
  BARMAN_BINARY_PATH      path to barman binary (default: /usr/bin/barman)
  BARMAN_USER_NAME        username used for barman execution (default: barman)
  BARMAN_CONFIG_DIR       path to dir with user defined config files (default: /etc/barman.d)
  BARMAN_EXPORTER_CONFIG  path to YAML settings file (optional)"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='barman_exporter',
        description='Prometheus exporter for barman check results.',
        epilog=USAGE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--version', action='store_true',
                        help='show current version')
    parser.add_argument('--parallel-check', action='store_true',
                        help='check different databases in parallel')
    parser.add_argument('--scrape-interval', type=int,
                        default=ProgramConfig.DEFAULT_SCRAPE_INTERVAL,
                        help='exporter metrics update interval in seconds (default: %(default)s)')
    parser.add_argument('--config', type=Path, default=None,
                        help='YAML file with exporter settings')
    return parser


def format_version() -> str:
    """Version and commit, tab-aligned."""
    rows = []
    if __version__:
        rows.append(('version:', __version__))
    rows.append(('git commit:', __commit__))
    width = max(len(label) for label, _ in rows) + 2
    return ''.join(f"{label:<{width}}{value}\n" for label, value in rows)


async def main(args: argparse.Namespace) -> int:
    """Entry point for the exporter service."""
    try:
        config = ProgramConfig(ProgramSource(), config_path=args.config)
        config.load()
        config.apply_args(args)
    except ConfigurationError as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    program_logger = ProgramLogger(config)
    logger = program_logger.logger
    if config.config_path:
        logger.info(f"Loaded settings from {config.config_path}")

    try:
        exporter = BarmanExporter(config, logger)
        return await exporter.run()
    finally:
        program_logger.close()


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Parse arguments and run the service."""
    args = build_parser().parse_args(argv)

    if args.version:
        sys.stdout.write(format_version())
        return 0

    try:
        return asyncio.run(main(args))
    except KeyboardInterrupt:
        return 0

if __name__ == '__main__':
    sys.exit(run())

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
