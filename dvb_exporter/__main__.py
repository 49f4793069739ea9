
import logging
import sys
import typer
from pathlib import Path
from rich import print
from rich.markup import escape
from rich.rule import Rule
from rich.style import Style
from typing import Optional

from dvb_exporter import __version__
from dvb_exporter.config import ConfigError
from dvb_exporter.config import ExporterConfig
from dvb_exporter.constants import LogLevel
from dvb_exporter.log import setupLogging
from dvb_exporter.server import serve


app = typer.Typer()

def version_callback(value: bool) -> None:
    if value is True:
        print(f'dvb_exporter version {__version__}')
        raise typer.Exit()

@app.command(help='dvb_exporter: Exposes status and signal statistics of Linux DVB frontend devices as Prometheus metrics.')
def main(
    config: Optional[Path] = typer.Option(None, '--config', help='Load settings from the specified YAML file. Command line options take precedence.'),
    listen_address: Optional[str] = typer.Option(None, '--listen-address', help='The address to listen on for HTTP requests. [default: :9111]'),
    telemetry_path: Optional[str] = typer.Option(None, '--telemetry-path', help='Path under which to expose metrics. [default: /metrics]'),
    dvb_root: Optional[Path] = typer.Option(None, '--dvb-root', help='Root directory of the DVB device tree. [default: /dev/dvb]'),
    web_config_file: Optional[Path] = typer.Option(None, '--web-config-file', help='Path to a web configuration file that enables TLS and/or basic authentication.'),
    log_level: Optional[LogLevel] = typer.Option(None, '--log-level', help='Only log messages with the given severity or above. [default: info]'),
    version: bool = typer.Option(False, '--version', callback=version_callback, is_eager=True, help='Show the version and exit.'),
):

    # 設定ファイル → CLI オプションの順に設定を組み立てる
    try:
        exporter_config = ExporterConfig.load(config) if config is not None else ExporterConfig()
        exporter_config = exporter_config.merge(
            listen_address = listen_address,
            telemetry_path = telemetry_path,
            dvb_root = dvb_root,
            web_config_file = web_config_file,
            log_level = log_level,
        )
        # 待ち受けアドレスの形式をここで検証しておく
        exporter_config.listen_host_port
        web_config = exporter_config.loadWebConfig()
    except ConfigError as ex:
        print(f'[red]{escape(str(ex))}[/red]')
        raise typer.Exit(code=1)

    setupLogging(exporter_config.log_level)

    print(Rule(
        title = f'dvb_exporter version {__version__}',
        characters = '=',
        style = Style(color='#E33157'),
        align = 'center',
    ), file=sys.stderr)

    # 実行環境が Linux か確認
    if sys.platform != 'linux':
        logging.warning('dvb_exporter only supports Linux. No DVB devices will be found.')

    logging.info(f'Starting dvb_exporter (version: {__version__}, dvb root: {exporter_config.dvb_root})')
    try:
        serve(exporter_config, web_config)
    except ConfigError as ex:
        logging.error(ex)
        raise typer.Exit(code=1)


if __name__ == '__main__':
    app()
