
from __future__ import annotations

import ctypes
import fcntl
import logging
from pathlib import Path
from types import TracebackType
from typing import BinaryIO

from dvb_exporter.constants import (
    CounterStatistic,
    DecibelStatistic,
    DeviceIdentity,
    DTV_ENUM_DELSYS,
    DTVStatCommand,
    DVB_DEVICE_ROOT,
    DVBExporterError,
    FEDeliverySystem,
    FEScale,
    FEStatus,
    FrontendInfo,
    FrontendStatus,
    MAX_DTV_STATS,
    RelativeStatistic,
    ScaledStatistic,
    UnavailableStatistic,
)


logger = logging.getLogger(__name__)


# 以下は linux/dvb/frontend.h から抜粋/移植した構造体
# カーネル側の定義に合わせ、__attribute__ ((packed)) が付いている構造体は _pack_ = 1 で定義する
# _pack_ を使う構造体は _layout_ も明示する (Python 3.14 以降、非 Windows 環境で _layout_ の省略は非推奨)

class DtvStats(ctypes.Structure):
    class _u(ctypes.Union):
        _fields_ = [
            ('uvalue', ctypes.c_uint64),  # カウンタ値と相対値
            ('svalue', ctypes.c_int64),   # 0.001 dB 単位の値
        ]
    _pack_ = 1
    _layout_ = 'ms'
    _fields_ = [
        ('scale', ctypes.c_uint8),
        ('u', _u),
    ]


class DtvFeStats(ctypes.Structure):
    _pack_ = 1
    _layout_ = 'ms'
    _fields_ = [
        ('len', ctypes.c_uint8),
        ('stat', DtvStats * MAX_DTV_STATS),
    ]


class DtvPropertyBuffer(ctypes.Structure):
    _fields_ = [
        ('data', ctypes.c_uint8 * 32),
        ('len', ctypes.c_uint32),
        ('reserved1', ctypes.c_uint32 * 3),
        ('reserved2', ctypes.c_void_p),
    ]


class DtvProperty(ctypes.Structure):
    class _u(ctypes.Union):
        _pack_ = 1
        _layout_ = 'ms'
        _fields_ = [
            ('data', ctypes.c_uint32),
            ('st', DtvFeStats),
            ('buffer', DtvPropertyBuffer),
        ]
    _pack_ = 1
    _layout_ = 'ms'
    _fields_ = [
        ('cmd', ctypes.c_uint32),
        ('reserved', ctypes.c_uint32 * 3),
        ('u', _u),
        ('result', ctypes.c_int),
    ]


class DtvProperties(ctypes.Structure):
    _fields_ = [
        ('num', ctypes.c_uint32),
        ('props', ctypes.POINTER(DtvProperty)),
    ]


class DvbFrontendInfo(ctypes.Structure):
    _fields_ = [
        ('name', ctypes.c_char * 128),
        ('type', ctypes.c_uint),
        ('frequency_min', ctypes.c_uint32),
        ('frequency_max', ctypes.c_uint32),
        ('frequency_stepsize', ctypes.c_uint32),
        ('frequency_tolerance', ctypes.c_uint32),
        ('symbol_rate_min', ctypes.c_uint32),
        ('symbol_rate_max', ctypes.c_uint32),
        ('symbol_rate_tolerance', ctypes.c_uint32),
        ('notifier_delay', ctypes.c_uint32),
        ('caps', ctypes.c_uint),
    ]


def _IOR(ioc_type: str, nr: int, size: int) -> int:
    """ asm-generic/ioctl.h の _IOR() マクロ相当 """
    IOC_READ = 2
    return (IOC_READ << 30) | (size << 16) | (ord(ioc_type) << 8) | nr


# ioctl API コマンドの定数
## 64bit 環境ではそれぞれ 0x80046f45, 0x80a86f3d, 0x80106f53 になる
FE_READ_STATUS = _IOR('o', 69, ctypes.sizeof(ctypes.c_uint32))
FE_GET_INFO = _IOR('o', 61, ctypes.sizeof(DvbFrontendInfo))
FE_GET_PROPERTY = _IOR('o', 83, ctypes.sizeof(DtvProperties))

# 1回の FE_GET_PROPERTY でまとめて取得する統計プロパティ
STAT_COMMANDS: list[DTVStatCommand] = list(DTVStatCommand)


class DVBFrontend:
    """ DVB フロントエンドデバイスの状態と統計情報を DVBv5 ioctl API で読み取るクラス """


    def __init__(self, identity: DeviceIdentity, file: BinaryIO) -> None:
        """
        DVBFrontend を初期化する
        通常は DVBFrontend.open() を使う

        Args:
            identity (DeviceIdentity): デバイスの識別子
            file (BinaryIO): オープン済みのデバイスファイル
        """

        self._identity = identity
        self._file = file


    @property
    def identity(self) -> DeviceIdentity:
        return self._identity
    @property
    def closed(self) -> bool:
        return self._file.closed


    @classmethod
    def open(cls, identity: DeviceIdentity, root: Path = DVB_DEVICE_ROOT) -> DVBFrontend:
        """
        DVB フロントエンドデバイスを読み取り専用でオープンする
        読み取り専用であれば、他のプロセスが選局に使っているフロントエンドでもオープンできる

        Args:
            identity (DeviceIdentity): デバイスの識別子
            root (Path, optional): デバイスツリーのルートディレクトリ. Defaults to /dev/dvb.

        Returns:
            DVBFrontend: オープンしたフロントエンド

        Raises:
            FrontendOpenError: デバイスファイルをオープンできなかった場合
        """

        device_path = identity.device_path(root)
        try:
            file = open(device_path, 'rb', buffering=0)
        except OSError as ex:
            raise FrontendOpenError(f'Failed to open tuner device: {device_path} ({ex.strerror})') from ex

        return cls(identity, file)


    def close(self) -> None:
        # 何度呼び出しても問題ない
        self._file.close()


    def __enter__(self) -> DVBFrontend:
        return self


    def __exit__(self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


    def readStatus(self) -> FrontendStatus:
        """
        FE_READ_STATUS でフロントエンドのロック状態を取得する

        Returns:
            FrontendStatus: フロントエンドの状態

        Raises:
            FrontendIOError: ioctl に失敗した場合
        """

        mask = ctypes.c_uint32()
        self.__ioctl(FE_READ_STATUS, mask, 'FE_READ_STATUS')
        return decodeStatus(mask.value)


    def getStats(self) -> list[tuple[DTVStatCommand, ScaledStatistic]]:
        """
        FE_GET_PROPERTY で全ての統計プロパティを1回の ioctl でまとめて取得する
        フロントエンドがサポートしていない (len が 0 の) プロパティは結果に含めない

        Returns:
            list[tuple[DTVStatCommand, ScaledStatistic]]: 統計プロパティのコマンドと値の組のリスト

        Raises:
            FrontendIOError: ioctl に失敗した場合
        """

        props = (DtvProperty * len(STAT_COMMANDS))()
        for prop, command in zip(props, STAT_COMMANDS):
            prop.cmd = command
        dtv_props = DtvProperties(num=len(props), props=ctypes.cast(props, ctypes.POINTER(DtvProperty)))
        self.__ioctl(FE_GET_PROPERTY, dtv_props, 'FE_GET_PROPERTY')

        stats: list[tuple[DTVStatCommand, ScaledStatistic]] = []
        for prop, command in zip(props, STAT_COMMANDS):
            try:
                stat = decodeFrontendStats(prop.u.st)
            except StatDecodeError as ex:
                # 壊れたレコードは「値なし」として扱う
                logger.debug(f'{self._identity}: Skipping malformed {command.name} record: {ex}')
                continue
            if stat is None:
                continue
            stats.append((command, stat))

        return stats


    def getInfo(self) -> FrontendInfo:
        """
        FE_GET_INFO でチューナー名を、DTV_ENUM_DELSYS でサポートされている配信システムのリストを取得する

        Returns:
            FrontendInfo: フロントエンドの情報

        Raises:
            FrontendIOError: ioctl に失敗した場合
        """

        fe_info = DvbFrontendInfo()
        self.__ioctl(FE_GET_INFO, fe_info, 'FE_GET_INFO')

        dtv_prop = DtvProperty(cmd=DTV_ENUM_DELSYS)
        dtv_props = DtvProperties(num=1, props=ctypes.pointer(dtv_prop))
        self.__ioctl(FE_GET_PROPERTY, dtv_props, 'FE_GET_PROPERTY')

        # 配信システムの数は u.buffer.len に、それぞれの値は u.buffer.data に入っている
        delivery_systems: list[str] = []
        for i in range(min(dtv_prop.u.buffer.len, len(dtv_prop.u.buffer.data))):
            value = dtv_prop.u.buffer.data[i]
            try:
                delivery_systems.append(FEDeliverySystem(value).name.removeprefix('SYS_'))
            except ValueError:
                delivery_systems.append(str(value))

        return FrontendInfo(
            name = fe_info.name.decode('utf-8', errors='replace').strip(),
            delivery_systems = delivery_systems,
        )


    def __ioctl(self, request: int, arg: ctypes.Structure | ctypes.c_uint32, name: str) -> None:
        try:
            fcntl.ioctl(self._file, request, arg)
        except OSError as ex:
            raise FrontendIOError(f'Failed to ioctl: {name} (errno: {ex.errno})') from ex


def decodeStatus(mask: int) -> FrontendStatus:
    """
    fe_status のビットマスクを FrontendStatus に変換する
    各フラグは対応するビットのみから決まり、未知のビットは無視する

    Args:
        mask (int): FE_READ_STATUS で取得したビットマスク

    Returns:
        FrontendStatus: フロントエンドの状態
    """

    return FrontendStatus(
        has_signal = (mask & FEStatus.FE_HAS_SIGNAL) != 0,
        has_carrier = (mask & FEStatus.FE_HAS_CARRIER) != 0,
        has_viterbi = (mask & FEStatus.FE_HAS_VITERBI) != 0,
        has_sync = (mask & FEStatus.FE_HAS_SYNC) != 0,
        has_lock = (mask & FEStatus.FE_HAS_LOCK) != 0,
        timedout = (mask & FEStatus.FE_TIMEDOUT) != 0,
        reinit = (mask & FEStatus.FE_REINIT) != 0,
    )


def decodeFrontendStats(fe_stats: DtvFeStats) -> ScaledStatistic | None:
    """
    dtv_fe_stats から全体 (レイヤー 0) の値を取り出す

    Returns:
        ScaledStatistic | None: 統計値 (フロントエンドが非対応の場合は None)

    Raises:
        StatDecodeError: len がありえない値だった場合
    """

    if fe_stats.len == 0:
        return None
    if fe_stats.len > MAX_DTV_STATS:
        raise StatDecodeError(f'Invalid stat length: {fe_stats.len}')

    return decodeScaledStatistic(fe_stats.stat[0])


def decodeScaledStatistic(raw: DtvStats) -> ScaledStatistic:
    # scale を確認してから共用体のどちらの値を読むかを決める
    if raw.scale == FEScale.FE_SCALE_DECIBEL:
        return DecibelStatistic(svalue=raw.u.svalue)
    elif raw.scale == FEScale.FE_SCALE_RELATIVE:
        return RelativeStatistic(uvalue=raw.u.uvalue)
    elif raw.scale == FEScale.FE_SCALE_COUNTER:
        return CounterStatistic(uvalue=raw.u.uvalue)
    else:
        return UnavailableStatistic(scale=raw.scale)


class FrontendOpenError(DVBExporterError):
    """ フロントエンドデバイスのオープンに失敗したことを表す例外 """
    pass


class FrontendIOError(DVBExporterError):
    """ フロントエンドデバイスへの ioctl に失敗したことを表す例外 """
    pass


class StatDecodeError(DVBExporterError):
    """ 統計プロパティのレコードが不正な形式だったことを表す例外 """
    pass
