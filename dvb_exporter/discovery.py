
from __future__ import annotations

import re
from pathlib import Path

from dvb_exporter.constants import DVB_DEVICE_ROOT, DVBExporterError


class DVBDeviceTree:
    """ /dev/dvb 以下のデバイスツリーから、現在利用可能なアダプタとフロントエンドを列挙するクラス """

    ADAPTER_PATTERN = re.compile(r'adapter(0|[1-9]\d*)')
    FRONTEND_PATTERN = re.compile(r'frontend(0|[1-9]\d*)')


    def __init__(self, root: Path = DVB_DEVICE_ROOT) -> None:
        """
        DVBDeviceTree を初期化する

        Args:
            root (Path, optional): デバイスツリーのルートディレクトリ. Defaults to /dev/dvb.
        """

        self._root = root


    @property
    def root(self) -> Path:
        return self._root


    def listAdapters(self) -> list[int]:
        """
        デバイスツリーのルートに存在するアダプタ番号の一覧を昇順で取得する
        adapterN の形式に一致しないエントリは無視する

        Returns:
            list[int]: アダプタ番号のリスト

        Raises:
            EnumerationError: ルートディレクトリを列挙できなかった場合 (存在しない・権限がないなど)
        """

        # ルートディレクトリが存在しない場合も「デバイスが 0 個」とはせずエラーとして扱う
        ## チューナーが本当に接続されていないのか、エクスポーターの設定ミスなのかを区別できるようにするため
        adapters: list[int] = []
        for entry in self.__listDirectory(self._root):
            match = self.ADAPTER_PATTERN.fullmatch(entry.name)
            if match is None or entry.is_dir() is False:
                continue
            adapters.append(int(match.group(1)))

        return sorted(adapters)


    def listFrontends(self, adapter: int) -> list[int]:
        """
        指定されたアダプタ配下に存在するフロントエンド番号の一覧を昇順で取得する

        Args:
            adapter (int): アダプタ番号

        Returns:
            list[int]: フロントエンド番号のリスト

        Raises:
            EnumerationError: アダプタのディレクトリを列挙できなかった場合
        """

        frontends: list[int] = []
        for entry in self.__listDirectory(self._root / f'adapter{adapter}'):
            match = self.FRONTEND_PATTERN.fullmatch(entry.name)
            # フロントエンドはキャラクタデバイスなので、ディレクトリは除外する
            if match is None or entry.is_dir() is True:
                continue
            frontends.append(int(match.group(1)))

        return sorted(frontends)


    @staticmethod
    def __listDirectory(path: Path) -> list[Path]:
        try:
            return list(path.iterdir())
        except OSError as ex:
            raise EnumerationError(f'Failed to list directory: {path} ({ex.strerror})') from ex


class EnumerationError(DVBExporterError):
    """ デバイスツリーのディレクトリを列挙できなかったことを表す例外 """
    pass
