#!/usr/bin/env python3
"""
Fingerprint Correlator
======================

Main entry point for the fingerprint correlator API.

Sensors (edge worker, TLS terminator, authoritative DNS, browser WebRTC,
passive TCP) post partial observations keyed by a correlation id; the
browser collector then submits its payload and the server assembles one
snapshot with stable identifiers.

Backends:
  - In-process memory (default): one process owns the chunk buffer
  - Redis (REDIS_URL or correlation.redis_url): shared across workers

Usage:
    python main.py                    # Start with config/config.yaml
    python main.py --debug            # Enable debug logging
    python main.py -c other.yaml -p 8080
"""

import os
import sys
import signal
from pathlib import Path

import yaml
import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from fpcore.kv_backend import get_kv_backend
from fpcore.correlation_store import create_correlation_store
from fpcore.fingerprinting import create_ingestor
from fpcore.fingerprint_service import create_service, VERSION
from fpapi.app import create_app

# Rich console for pretty output
console = Console()


def load_config(config_path: str = "config/config.yaml") -> dict:
    """Load configuration from YAML file."""
    config_file = Path(config_path)
    if not config_file.is_absolute():
        config_file = PROJECT_ROOT / config_path
    if not config_file.exists():
        logger.error(f"Config file not found: {config_file}")
        sys.exit(1)

    with open(config_file, "r") as f:
        config = yaml.safe_load(f) or {}

    return config


CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}:{line}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}"


def setup_logging(config: dict) -> None:
    """
    Install the loguru sinks.

    logging.file empty disables the file sink; logging.json writes it as
    serialized records. Sinks are enqueued since the server is threaded.
    """
    log_config = config.get("logging", {})
    level = log_config.get("level") or config.get("general", {}).get("log_level", "INFO")

    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, enqueue=True)

    file_name = log_config.get("file")
    if not file_name:
        return

    log_file = Path(file_name)
    if not log_file.is_absolute():
        log_file = PROJECT_ROOT / log_file
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger.add(
        str(log_file),
        level=log_config.get("file_level", level),
        format=FILE_FORMAT,
        serialize=bool(log_config.get("json", False)),
        rotation=log_config.get("max_size", "10 MB"),
        retention=log_config.get("backup_count", 5),
        enqueue=True
    )


def print_banner():
    """Print startup banner."""
    banner = f"""
    FP-CORRELATOR  v{VERSION}
    edge | tls | dns | webrtc | tcp  ->  snapshot
    """

    console.print(Panel(
        Text(banner, style="bold cyan"),
        title="[bold white]Network Client Fingerprint Correlator[/bold white]",
        subtitle="[dim]correlation buffer and identity pipeline[/dim]",
        border_style="cyan"
    ))


class CorrelatorOrchestrator:
    """
    Wires the correlator components and runs the HTTP server.

    Components:
    - KeyValueBackend: memory or Redis, fixed for the process lifetime
    - CorrelationStore: chunk buffer with sliding TTL
    - ChunkIngestor: sensor ingest boundary
    - FingerprintService: assembler, hasher, repository, comparison
    """

    def __init__(self, config: dict):
        self.config = config
        self.running = False

        logger.info("Initializing correlator components...")

        self.backend = get_kv_backend(config)
        self.store = create_correlation_store(config, self.backend)
        self.ingestor = create_ingestor(config, self.store)
        self.service = create_service(config, self.store)

        self.app = create_app(
            config,
            service=self.service,
            ingestor=self.ingestor,
            store=self.store
        )

        logger.info(f"Components initialized (backend={self.backend.describe()})")

    def start(self):
        """Start the HTTP server (blocks)."""
        self.running = True

        host = self.config.get("api", {}).get("host", "0.0.0.0")
        port = self.config.get("api", {}).get("port", 3000)
        debug = self.config.get("general", {}).get("debug", False)

        backend = self.backend.describe().get("backend")
        console.print(f"[bold green]Correlator started ({backend} backend)[/bold green]")
        console.print(f"[dim]API: http://{host}:{port}[/dim]\n")

        self.app.run(
            host=host,
            port=port,
            debug=debug,
            threaded=True,
            use_reloader=False
        )

    def stop(self):
        """Stop background sweeps and close the backend."""
        logger.info("Stopping correlator...")
        self.running = False
        self.service.stop()
        self.backend.close()
        logger.info("Correlator stopped")


@click.command()
@click.option("--config", "-c", default="config/config.yaml", help="Path to config file")
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging")
@click.option("--host", "-h", default=None, help="Bind address")
@click.option("--port", "-p", default=None, type=int, help="API port")
def main(config: str, debug: bool, host: str, port: int):
    """
    Fingerprint Correlator - network client fingerprint correlation API
    """
    # Print banner
    print_banner()

    # Load configuration
    cfg = load_config(config)
    cfg.setdefault("general", {})
    cfg.setdefault("api", {})

    # Override config with CLI options / environment
    if debug:
        cfg["general"]["debug"] = True
        cfg["general"]["log_level"] = "DEBUG"
        cfg.setdefault("logging", {})["level"] = "DEBUG"
    if host:
        cfg["api"]["host"] = host
    if port:
        cfg["api"]["port"] = port
    elif os.environ.get("PORT"):
        cfg["api"]["port"] = int(os.environ["PORT"])

    # Setup logging
    setup_logging(cfg)

    orchestrator = CorrelatorOrchestrator(cfg)

    # Handle shutdown signals
    def signal_handler(signum, frame):
        console.print("\n[yellow]Shutting down correlator...[/yellow]")
        orchestrator.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Start the system
    try:
        orchestrator.start()
    except KeyboardInterrupt:
        orchestrator.stop()
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        orchestrator.stop()
        sys.exit(1)


if __name__ == "__main__":
    main()
