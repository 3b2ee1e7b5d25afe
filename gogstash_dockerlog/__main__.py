import sys
import signal
import asyncio

from .app import DockerLogInput
from .checkpoint import CheckpointError
from .config import InputConfig, ConfigError, configure_logging
from .monitor import DiscoveryError
from .robustness import StructuredLogger
from .runtime import RuntimeUnavailable

try:
    import uvloop
    uvloop.install()
except ImportError:
    pass

FATAL_ERRORS = (ConfigError, CheckpointError, RuntimeUnavailable, DiscoveryError)


async def main() -> int:
    logger = StructuredLogger("main")
    try:
        config = InputConfig.load()
    except ConfigError as e:
        configure_logging()
        logger.error("Configuração inválida; encerrando", error=str(e))
        return 1
    configure_logging(config.debug_mode)

    app = DockerLogInput(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.shutdown_event.set)
        except NotImplementedError:
            pass
    try:
        await app.setup()
        await app.start()
        await app.run_until_shutdown()
    except FATAL_ERRORS as e:
        logger.error("Erro fatal; encerrando ingestão", error_type=e.__class__.__name__, error=str(e))
        return 1
    finally:
        await app.stop()
    return 0


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
