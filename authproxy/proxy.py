import argparse
import dataclasses
import logging
import os
import sys

from authproxy.model.AuthProxyServer import AuthProxyServer
from authproxy.model.Core.AuthManager import Credentials
from authproxy.model.Core.errors import ConfigError
from authproxy.model.Core.logger import configure_logging, fields
from authproxy.model.Core.settings import Settings
from authproxy.model.ProbeServer import ProbeServer
from authproxy.model.Supervisor import Supervisor


def build_parser():
    parser = argparse.ArgumentParser(
        description="Credential gated forward proxy. Configuration comes from the environment; flags override it."
    )
    parser.add_argument("-H", "--host", help="Bind address of both listeners (LISTEN_ADDR)")
    parser.add_argument("-p", "--port-proxy", type=int, help="Proxy listener port (PORT_PROXY)")
    parser.add_argument("--port-probes", type=int, help="Probe listener port (PORT_PROBES)")
    parser.add_argument("-d", "--debug", action="store_true", default=None, help="Enable debug logging (DEBUG)")
    return parser


def apply_overrides(settings: Settings, args) -> Settings:
    overrides = {
        "listen_addr": args.host,
        "port_proxy": args.port_proxy,
        "port_probes": args.port_probes,
        "debug": args.debug,
    }
    return dataclasses.replace(settings, **{k: v for k, v in overrides.items() if v is not None})


def build_supervisor(settings: Settings, logger: logging.Logger) -> Supervisor:
    proxy_server = AuthProxyServer(
        Credentials(settings.username, settings.password),
        logger,
        listening_addr=settings.listen_addr,
        listening_port=settings.port_proxy,
        realm=settings.realm,
        dial_timeout=settings.dial_timeout,
        upstream_timeout=settings.upstream_timeout,
    )
    probe_server = ProbeServer(
        settings.readiness_url,
        logger,
        listening_addr=settings.listen_addr,
        listening_port=settings.port_probes,
        readiness_timeout=settings.readiness_timeout,
    )
    return Supervisor(proxy_server, probe_server, settings.shutdown_timeout, logger)


def main(argv=None):
    """
    Main function to run the AuthProxy servers.
    """
    args = build_parser().parse_args(argv)

    try:
        settings = apply_overrides(Settings.from_env(), args)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        logging.getLogger("authproxy").error("Invalid configuration %s", fields(error=e))
        sys.exit(1)

    logger = configure_logging(settings)
    supervisor = build_supervisor(settings, logger)
    supervisor.install_signal_handlers()
    code = supervisor.run()

    logging.shutdown()
    if supervisor.listener_failed:
        # Skip interpreter teardown, which would wait on live tunnel workers
        os._exit(code)
    sys.exit(code)


if __name__ == "__main__":
    main()
