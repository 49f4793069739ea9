
from __future__ import annotations

import base64
import binascii
import logging
import socket
import ssl
from collections.abc import Callable, Iterable
from socketserver import ThreadingMixIn
from typing import Any
from wsgiref.simple_server import make_server, WSGIRequestHandler, WSGIServer

import bcrypt
from prometheus_client import CollectorRegistry, make_wsgi_app, PlatformCollector, ProcessCollector

from dvb_exporter import __version__
from dvb_exporter.collector import DVBCollector, PrometheusCollector
from dvb_exporter.config import ConfigError, ExporterConfig, TLSServerConfig, WebConfig
from dvb_exporter.discovery import DVBDeviceTree


logger = logging.getLogger(__name__)

WSGIApp = Callable[[dict[str, Any], Callable[..., Any]], Iterable[bytes]]

# Web 設定ファイルの TLS バージョン名と ssl.TLSVersion の対応表
TLS_VERSIONS = {
    'TLS10': ssl.TLSVersion.TLSv1,
    'TLS11': ssl.TLSVersion.TLSv1_1,
    'TLS12': ssl.TLSVersion.TLSv1_2,
    'TLS13': ssl.TLSVersion.TLSv1_3,
}

# Web 設定ファイルの client_auth_type と ssl の検証モードの対応表
CLIENT_AUTH_MODES = {
    'NoClientCert': ssl.CERT_NONE,
    'VerifyClientCertIfGiven': ssl.CERT_OPTIONAL,
    'RequireAndVerifyClientCert': ssl.CERT_REQUIRED,
}


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    # スクレイプが同時に来ても、それぞれ別スレッドで独立して収集する
    daemon_threads = True
    allow_reuse_address = True


class ThreadingWSGIServerV6(ThreadingWSGIServer):
    address_family = socket.AF_INET6


class QuietHandler(WSGIRequestHandler):
    """ アクセスログを標準エラー出力ではなく logging に流す """

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(f'{self.address_string()} - {format % args}')


def createRegistry(config: ExporterConfig) -> CollectorRegistry:
    """
    DVB フロントエンドのコレクターと、プロセス・プラットフォームの標準コレクターを登録したレジストリを作成する

    Args:
        config (ExporterConfig): エクスポーターの設定

    Returns:
        CollectorRegistry: レジストリ
    """

    registry = CollectorRegistry()
    registry.register(PrometheusCollector(DVBCollector(DVBDeviceTree(config.dvb_root))))
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    return registry


def createApp(
    registry: CollectorRegistry,
    telemetry_path: str = '/metrics',
    basic_auth_users: dict[str, str] | None = None,
) -> WSGIApp:
    """
    メトリクスを公開する WSGI アプリケーションを作成する
    telemetry_path ではメトリクスを、/ では簡単なランディングページを返す

    Args:
        registry (CollectorRegistry): 公開するレジストリ
        telemetry_path (str, optional): メトリクスを公開するパス. Defaults to '/metrics'.
        basic_auth_users (dict[str, str] | None, optional): Basic 認証のユーザー名と bcrypt ハッシュの組 (空なら認証しない). Defaults to None.

    Returns:
        WSGIApp: WSGI アプリケーション
    """

    metrics_app = make_wsgi_app(registry)
    landing_page = (
        '<html>\n'
        '<head><title>DVB Exporter</title></head>\n'
        '<body>\n'
        f'<h1>DVB Exporter <small>{__version__}</small></h1>\n'
        f'<p><a href="{telemetry_path}">Metrics</a></p>\n'
        '</body>\n'
        '</html>\n'
    ).encode('utf-8')

    def app(environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        # Basic 認証が有効な場合は、全てのパスで認証を要求する
        if basic_auth_users and checkBasicAuth(environ.get('HTTP_AUTHORIZATION'), basic_auth_users) is False:
            start_response('401 Unauthorized', [
                ('Content-Type', 'text/plain; charset=utf-8'),
                ('WWW-Authenticate', 'Basic'),
            ])
            return [b'Unauthorized\n']

        path = environ.get('PATH_INFO', '/')
        if path == telemetry_path:
            return metrics_app(environ, start_response)
        if path == '/':
            start_response('200 OK', [('Content-Type', 'text/html; charset=utf-8')])
            return [landing_page]
        start_response('404 Not Found', [('Content-Type', 'text/plain; charset=utf-8')])
        return [b'404 page not found\n']

    return app


def checkBasicAuth(authorization: str | None, users: dict[str, str]) -> bool:
    """
    Authorization ヘッダーの Basic 認証の資格情報を検証する

    Args:
        authorization (str | None): Authorization ヘッダーの値
        users (dict[str, str]): ユーザー名と bcrypt でハッシュ化したパスワードの組

    Returns:
        bool: 資格情報が正しければ True
    """

    if authorization is None:
        return False
    scheme, _, credentials = authorization.partition(' ')
    if scheme.lower() != 'basic':
        return False
    try:
        username, separator, password = base64.b64decode(credentials.strip(), validate=True).decode('utf-8').partition(':')
    except (binascii.Error, UnicodeDecodeError):
        return False
    if separator == '' or username not in users:
        return False

    # bcrypt は 72 バイトを超えるパスワードや壊れたハッシュに対して ValueError を送出する
    try:
        return bcrypt.checkpw(password.encode('utf-8'), users[username].encode('utf-8'))
    except ValueError as ex:
        logger.debug(f'Rejected basic auth credentials of user {username}: {ex}')
        return False


def createSSLContext(tls_config: TLSServerConfig) -> ssl.SSLContext:
    """
    Web 設定ファイルの tls_server_config からサーバー用の SSLContext を作成する

    Args:
        tls_config (TLSServerConfig): TLS の設定

    Returns:
        ssl.SSLContext: サーバー用の SSLContext

    Raises:
        ConfigError: 証明書や秘密鍵を読み込めなかった場合
    """

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = TLS_VERSIONS[tls_config.min_version]
    context.maximum_version = TLS_VERSIONS[tls_config.max_version]
    try:
        context.load_cert_chain(certfile=tls_config.cert_file, keyfile=tls_config.key_file)
        if tls_config.client_ca_file is not None:
            context.load_verify_locations(cafile=tls_config.client_ca_file)
    # ssl.SSLError も OSError のサブクラス
    except OSError as ex:
        raise ConfigError(f'Failed to load TLS certificate: {tls_config.cert_file} ({ex})') from ex
    context.verify_mode = CLIENT_AUTH_MODES[tls_config.client_auth_type]
    return context


def serve(config: ExporterConfig, web_config: WebConfig | None = None) -> None:
    """
    HTTP サーバーを起動し、Ctrl+C で停止されるまでメトリクスを公開し続ける

    Args:
        config (ExporterConfig): エクスポーターの設定
        web_config (WebConfig | None, optional): TLS と Basic 認証の設定. Defaults to None.

    Raises:
        ConfigError: TLS の証明書を読み込めなかった場合
    """

    if web_config is None:
        web_config = WebConfig()

    host, port = config.listen_host_port
    app = createApp(createRegistry(config), config.telemetry_path, web_config.basic_auth_users)
    # 証明書の読み込みに失敗した場合は、ポートを開く前にエラーにする
    ssl_context = createSSLContext(web_config.tls_server_config) if web_config.tls_server_config is not None else None

    # IPv6 アドレスで待ち受ける場合は AF_INET6 のソケットを使う
    server_class = ThreadingWSGIServerV6 if ':' in host else ThreadingWSGIServer
    server = make_server(host, port, app, server_class=server_class, handler_class=QuietHandler)
    if ssl_context is not None:
        server.socket = ssl_context.wrap_socket(server.socket, server_side=True)

    logger.info(
        f'Listening on {config.listen_address} (metrics path: {config.telemetry_path}, '
        f'TLS: {ssl_context is not None}, basic auth: {len(web_config.basic_auth_users) > 0})'
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info('Shutting down...')
    finally:
        server.server_close()
