from __future__ import annotations

from enum import IntEnum, IntFlag, StrEnum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# V4L-DVB 版ドライバにおけるデバイスツリーのルート
# DVB デバイスが接続されている場合、/dev/dvb/adapter0 などのディレクトリ配下に demux0, dvr0, frontend0 の各デバイスが存在する
DVB_DEVICE_ROOT = Path('/dev/dvb')


# Typer が Literal をサポートしていないため、StrEnum を使用する
# ref: https://github.com/fastapi/typer/issues/76
class LogLevel(StrEnum):
    DEBUG = 'debug'
    INFO = 'info'
    WARN = 'warn'
    ERROR = 'error'


class DeviceIdentity(BaseModel):
    """ DVB フロントエンドデバイスを一意に識別する (アダプタ番号, フロントエンド番号) の組 """

    model_config = ConfigDict(frozen=True)

    # fmt: off
    adapter: int = Field(ge=0)   # /dev/dvb/adapterN の N
    frontend: int = Field(ge=0)  # /dev/dvb/adapterN/frontendM の M
    # fmt: on

    @property
    def labels(self) -> dict[str, str]:
        return {'adapter': str(self.adapter), 'frontend': str(self.frontend)}

    def device_path(self, root: Path = DVB_DEVICE_ROOT) -> Path:
        return root / f'adapter{self.adapter}' / f'frontend{self.frontend}'

    def __str__(self) -> str:
        return f'adapter{self.adapter}/frontend{self.frontend}'


# 以下は linux/dvb/frontend.h から抜粋/移植した定数・列挙型

class FEStatus(IntFlag):
    """ FE_READ_STATUS で返される fe_status のビットマスク """
    FE_NONE = 0x00
    FE_HAS_SIGNAL = 0x01
    FE_HAS_CARRIER = 0x02
    FE_HAS_VITERBI = 0x04
    FE_HAS_SYNC = 0x08
    FE_HAS_LOCK = 0x10
    FE_TIMEDOUT = 0x20
    FE_REINIT = 0x40


class FEScale(IntEnum):
    """ dtv_stats.scale (enum fecap_scale_params) """
    FE_SCALE_NOT_AVAILABLE = 0
    FE_SCALE_DECIBEL = 1
    FE_SCALE_RELATIVE = 2
    FE_SCALE_COUNTER = 3


class DTVStatCommand(IntEnum):
    """ DVBv5 統計プロパティのコマンド番号 """
    DTV_STAT_SIGNAL_STRENGTH = 62
    DTV_STAT_CNR = 63
    DTV_STAT_PRE_ERROR_BIT_COUNT = 64
    DTV_STAT_PRE_TOTAL_BIT_COUNT = 65
    DTV_STAT_POST_ERROR_BIT_COUNT = 66
    DTV_STAT_POST_TOTAL_BIT_COUNT = 67
    DTV_STAT_ERROR_BLOCK_COUNT = 68
    DTV_STAT_TOTAL_BLOCK_COUNT = 69


# DVBv5 プロパティコマンドの定数
DTV_ENUM_DELSYS = 44

# 1つの統計プロパティに含まれる dtv_stats の最大数 (レイヤーごとの値)
MAX_DTV_STATS = 4


class FEDeliverySystem(IntEnum):
    """ 配信システムの列挙型 (enum fe_delivery_system) """
    SYS_UNDEFINED = 0
    SYS_DVBC_ANNEX_A = 1
    SYS_DVBC_ANNEX_B = 2
    SYS_DVBT = 3
    SYS_DSS = 4
    SYS_DVBS = 5
    SYS_DVBS2 = 6
    SYS_DVBH = 7
    SYS_ISDBT = 8
    SYS_ISDBS = 9
    SYS_ISDBC = 10
    SYS_ATSC = 11
    SYS_ATSCMH = 12
    SYS_DTMB = 13
    SYS_CMMB = 14
    SYS_DAB = 15
    SYS_DVBT2 = 16
    SYS_TURBO = 17
    SYS_DVBC_ANNEX_C = 18


# Pydantic モデルの定義

class FrontendStatus(BaseModel):
    # fmt: off
    has_signal: bool = False   # 何らかの信号を検出している
    has_carrier: bool = False  # DVB 信号のキャリアを検出している
    has_viterbi: bool = False  # 内符号 (FEC) が安定している
    has_sync: bool = False     # 同期バイトを検出している
    has_lock: bool = False     # 完全にロックしている
    timedout: bool = False     # 一定時間内にロックできなかった
    reinit: bool = False       # フロントエンドが再初期化された
    # fmt: on

    @classmethod
    def flagNames(cls) -> list[str]:
        return list(cls.model_fields.keys())


# ハードウェアから返される統計値は scale (タグ) によって値の解釈が変わる共用体になっている
# 生のメモリを読み替える代わりに、scale ごとに別のモデルとして表現する

class DecibelStatistic(BaseModel):
    scale: Literal[FEScale.FE_SCALE_DECIBEL] = FEScale.FE_SCALE_DECIBEL
    svalue: int  # 0.001 dB 単位の符号付き値


class RelativeStatistic(BaseModel):
    scale: Literal[FEScale.FE_SCALE_RELATIVE] = FEScale.FE_SCALE_RELATIVE
    uvalue: int  # 0 - 65535 の相対値


class CounterStatistic(BaseModel):
    scale: Literal[FEScale.FE_SCALE_COUNTER] = FEScale.FE_SCALE_COUNTER
    uvalue: int  # カウンタ値 (そのまま使う)


class UnavailableStatistic(BaseModel):
    scale: int = FEScale.FE_SCALE_NOT_AVAILABLE  # FE_SCALE_NOT_AVAILABLE または未知のタグ


ScaledStatistic = DecibelStatistic | RelativeStatistic | CounterStatistic | UnavailableStatistic


class StatPair(BaseModel):
    # 1回の読み取りではハードウェアが選んだ scale に応じてどちらか一方のみが入る
    decibel: float | None = None
    ratio: float | None = None


class FrontendStats(BaseModel):
    # fmt: off
    signal_strength: StatPair = StatPair()   # 信号強度
    cnr: StatPair = StatPair()               # C/N 比
    pre_error_bit_count: int | None = None   # 内符号訂正前のエラービット数
    pre_total_bit_count: int | None = None   # 内符号訂正前の総ビット数
    post_error_bit_count: int | None = None  # 内符号訂正後のエラービット数
    post_total_bit_count: int | None = None  # 内符号訂正後の総ビット数
    error_block_count: int | None = None     # エラーブロック数
    total_block_count: int | None = None     # 総ブロック数
    # fmt: on


class FrontendInfo(BaseModel):
    name: str = 'Unknown'
    delivery_systems: list[str] = []


class ObservationKind(StrEnum):
    STATUS = 'status'
    GAUGE = 'gauge'
    COUNTER = 'counter'


class Observation(BaseModel):
    # fmt: off
    name: str                # 名前空間を含まないメトリクス名 (ex: "signal_strength_decibels")
    labels: dict[str, str]   # ラベルセット
    value: float
    kind: ObservationKind
    # fmt: on


class MetricDefinition(BaseModel):
    name: str
    documentation: str
    kind: ObservationKind
    labelnames: list[str] = ['adapter', 'frontend']


# メトリクスの定義 (この順番で公開される)
METRIC_DEFINITIONS: dict[str, MetricDefinition] = {
    definition.name: definition for definition in [
        MetricDefinition(
            name = 'status',
            documentation = 'Status information about the DVB frontend devices.',
            kind = ObservationKind.STATUS,
            labelnames = ['status', 'adapter', 'frontend'],
        ),
        MetricDefinition(
            name = 'info',
            documentation = 'Name and supported delivery systems of the DVB frontend devices.',
            kind = ObservationKind.GAUGE,
            labelnames = ['adapter', 'frontend', 'name', 'delivery_system'],
        ),
        MetricDefinition(
            name = 'signal_strength_decibels',
            documentation = 'Signal strength level at the analog part of the tuner or of the demod.',
            kind = ObservationKind.GAUGE,
        ),
        MetricDefinition(
            name = 'signal_strength_ratio',
            documentation = 'Signal strength level at the analog part of the tuner or of the demod.',
            kind = ObservationKind.GAUGE,
        ),
        MetricDefinition(
            name = 'CNR_decibels',
            documentation = 'Signal to Noise ratio for the main carrier.',
            kind = ObservationKind.GAUGE,
        ),
        MetricDefinition(
            name = 'CNR_ratio',
            documentation = 'Signal to Noise ratio for the main carrier.',
            kind = ObservationKind.GAUGE,
        ),
        MetricDefinition(
            name = 'pre_error_bytes_total',
            documentation = 'Total number of error bytes before the inner code.',
            kind = ObservationKind.COUNTER,
        ),
        MetricDefinition(
            name = 'pre_bytes_total',
            documentation = 'Total number of bytes received before the inner code.',
            kind = ObservationKind.COUNTER,
        ),
        MetricDefinition(
            name = 'post_error_bytes_total',
            documentation = 'Total number of error bytes after the inner code.',
            kind = ObservationKind.COUNTER,
        ),
        MetricDefinition(
            name = 'post_bytes_total',
            documentation = 'Total number of bytes received after the inner code.',
            kind = ObservationKind.COUNTER,
        ),
        MetricDefinition(
            name = 'error_blocks_total',
            documentation = 'Total number of error blocks.',
            kind = ObservationKind.COUNTER,
        ),
        MetricDefinition(
            name = 'blocks_total',
            documentation = 'Total number of received blocks.',
            kind = ObservationKind.COUNTER,
        ),
    ]
}


class DVBExporterError(Exception):
    """ dvb_exporter で発生する例外の基底クラス """
    pass
