from __future__ import annotations

from pathlib import Path
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator, ValidationError

from dvb_exporter.constants import DVB_DEVICE_ROOT, DVBExporterError, LogLevel


class ExporterConfig(BaseModel):
    """ エクスポーターの設定 (config.yml と CLI オプションから組み立てる) """

    model_config = ConfigDict(extra='forbid')

    # fmt: off
    listen_address: str = ':9111'           # HTTP リクエストを待ち受けるアドレス
    telemetry_path: str = '/metrics'        # メトリクスを公開するパス
    dvb_root: Path = DVB_DEVICE_ROOT        # DVB デバイスツリーのルートディレクトリ
    log_level: LogLevel = LogLevel.INFO     # ログレベル
    web_config_file: Path | None = None     # TLS や Basic 認証を設定する Web 設定ファイル (exporter-toolkit 形式)
    # fmt: on


    @classmethod
    def load(cls, path: Path) -> ExporterConfig:
        """
        YAML 形式の設定ファイルを読み込む

        Args:
            path (Path): 設定ファイルのパス

        Returns:
            ExporterConfig: 読み込んだ設定

        Raises:
            ConfigError: 設定ファイルを読み込めなかった場合や、設定値が不正な場合
        """

        return cls.fromDict(loadYAMLMapping(path))


    @classmethod
    def fromDict(cls, data: dict[str, Any]) -> ExporterConfig:
        try:
            return cls.model_validate(data)
        except ValidationError as ex:
            raise ConfigError(f'Invalid config: {ex}') from ex


    def merge(self, **overrides: Any) -> ExporterConfig:
        """ None 以外の値で設定を上書きした新しい ExporterConfig を返す (CLI オプションの反映用) """

        data = self.model_dump()
        data.update({key: value for key, value in overrides.items() if value is not None})
        return self.fromDict(data)


    def loadWebConfig(self) -> WebConfig | None:
        """ web_config_file が指定されていれば読み込んで返す (指定されていなければ None) """

        if self.web_config_file is None:
            return None
        return WebConfig.load(self.web_config_file)


    @property
    def listen_host_port(self) -> tuple[str, int]:
        return parseListenAddress(self.listen_address)


class TLSServerConfig(BaseModel):
    """ Web 設定ファイルの tls_server_config セクション """

    model_config = ConfigDict(extra='forbid')

    # fmt: off
    cert_file: Path                         # サーバー証明書
    key_file: Path                          # サーバー証明書の秘密鍵
    client_auth_type: Literal['NoClientCert', 'VerifyClientCertIfGiven', 'RequireAndVerifyClientCert'] = 'NoClientCert'
    client_ca_file: Path | None = None      # クライアント証明書を検証する CA 証明書
    min_version: Literal['TLS10', 'TLS11', 'TLS12', 'TLS13'] = 'TLS12'
    max_version: Literal['TLS10', 'TLS11', 'TLS12', 'TLS13'] = 'TLS13'
    # fmt: on


    @model_validator(mode='after')
    def checkClientCA(self) -> TLSServerConfig:
        # クライアント証明書を検証するには CA 証明書が必要
        if self.client_auth_type != 'NoClientCert' and self.client_ca_file is None:
            raise ValueError(f'client_ca_file is required when client_auth_type is {self.client_auth_type}')
        if int(self.min_version[3:]) > int(self.max_version[3:]):
            raise ValueError(f'min_version ({self.min_version}) is newer than max_version ({self.max_version})')
        return self


    def resolvePaths(self, base: Path) -> TLSServerConfig:
        """ 相対パスで指定されたファイルを base からの相対パスとして解決した TLSServerConfig を返す """

        return self.model_copy(update={
            'cert_file': base / self.cert_file,
            'key_file': base / self.key_file,
            'client_ca_file': base / self.client_ca_file if self.client_ca_file is not None else None,
        })


class WebConfig(BaseModel):
    """
    Web 設定ファイル (Prometheus の exporter-toolkit と同じ形式)
    tls_server_config を指定すると HTTPS で、basic_auth_users を指定すると Basic 認証付きでメトリクスを公開する
    """

    model_config = ConfigDict(extra='forbid')

    # fmt: off
    tls_server_config: TLSServerConfig | None = None  # TLS の設定 (省略時は HTTP)
    basic_auth_users: dict[str, str] = {}             # ユーザー名と bcrypt でハッシュ化したパスワードの組
    # fmt: on


    @field_validator('basic_auth_users')
    @classmethod
    def checkPasswordHashes(cls, users: dict[str, str]) -> dict[str, str]:
        for username, hashed_password in users.items():
            if hashed_password.startswith(('$2a$', '$2b$', '$2y$')) is False:
                raise ValueError(f'Password of user {username} is not a bcrypt hash')
        return users


    @classmethod
    def load(cls, path: Path) -> WebConfig:
        """
        YAML 形式の Web 設定ファイルを読み込む
        ファイル内の相対パスは Web 設定ファイルのあるディレクトリを基準に解決する

        Args:
            path (Path): Web 設定ファイルのパス

        Returns:
            WebConfig: 読み込んだ設定

        Raises:
            ConfigError: 設定ファイルを読み込めなかった場合や、設定値が不正な場合
        """

        try:
            web_config = cls.model_validate(loadYAMLMapping(path))
        except ValidationError as ex:
            raise ConfigError(f'Invalid web config: {ex}') from ex

        if web_config.tls_server_config is not None:
            web_config = web_config.model_copy(update={
                'tls_server_config': web_config.tls_server_config.resolvePaths(Path(path).parent),
            })
        return web_config


def loadYAMLMapping(path: Path) -> dict[str, Any]:
    """
    YAML ファイルを読み込み、トップレベルのマッピングを返す
    空のファイルは空のマッピングとして扱う

    Args:
        path (Path): YAML ファイルのパス

    Returns:
        dict[str, Any]: 読み込んだマッピング

    Raises:
        ConfigError: ファイルを読み込めなかった場合や、トップレベルがマッピングでない場合
    """

    try:
        with open(path, encoding='utf-8') as file:
            data = YAML(typ='safe').load(file)
    except OSError as ex:
        raise ConfigError(f'Failed to read config file: {path} ({ex.strerror})') from ex
    except YAMLError as ex:
        raise ConfigError(f'Failed to parse config file: {path} ({ex})') from ex

    if data is None:
        return {}
    if isinstance(data, dict) is False:
        raise ConfigError(f'Invalid config file: {path} (top level must be a mapping)')
    return data


def parseListenAddress(address: str) -> tuple[str, int]:
    """
    "host:port" 形式の待ち受けアドレスをホストとポート番号に分割する
    ":9111" のようにホストを省略した場合は全てのインターフェイスで待ち受ける

    Args:
        address (str): 待ち受けアドレス (ex: ":9111", "127.0.0.1:9111", "[::1]:9111")

    Returns:
        tuple[str, int]: ホストとポート番号

    Raises:
        ConfigError: アドレスの形式が不正な場合
    """

    host, separator, port = address.rpartition(':')
    if separator == '' or port.isdigit() is False or not (0 <= int(port) <= 65535):
        raise ConfigError(f'Invalid listen address: {address}')

    # IPv6 アドレスは [] で囲まれている
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]

    return host, int(port)


class ConfigError(DVBExporterError):
    """ 設定が不正であることを表す例外 """
    pass
