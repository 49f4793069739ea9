
from __future__ import annotations

from collections.abc import Iterable

from dvb_exporter.constants import (
    CounterStatistic,
    DecibelStatistic,
    DTVStatCommand,
    FrontendStats,
    RelativeStatistic,
    ScaledStatistic,
    StatPair,
)


# FE_SCALE_DECIBEL の値は 0.001 dB 単位
DECIBEL_SCALE = 0.001

# FE_SCALE_RELATIVE の値は 0 (0%) - 65535 (100%)
RELATIVE_FULL_SCALE = 65535.0


def normalize(stat: ScaledStatistic) -> float | int | None:
    """
    scale に従って統計値を解釈する
    FE_SCALE_NOT_AVAILABLE や未知の scale の場合は 0 ではなく None を返す

    Args:
        stat (ScaledStatistic): フロントエンドから取得した統計値

    Returns:
        float | int | None: dB 値・比率 (0.0 - 1.0)・カウンタ値のいずれか (値がない場合は None)
    """

    if isinstance(stat, DecibelStatistic):
        return stat.svalue * DECIBEL_SCALE
    elif isinstance(stat, RelativeStatistic):
        return stat.uvalue / RELATIVE_FULL_SCALE
    elif isinstance(stat, CounterStatistic):
        return stat.uvalue
    else:
        return None


def toStatPair(stat: ScaledStatistic | None) -> StatPair:
    """ 信号強度・C/N 比の統計値を、dB 値か比率のどちらか一方が入った StatPair に変換する """

    if isinstance(stat, DecibelStatistic):
        return StatPair(decibel=normalize(stat))
    elif isinstance(stat, RelativeStatistic):
        return StatPair(ratio=normalize(stat))
    return StatPair()


def toCounter(stat: ScaledStatistic | None) -> int | None:
    # カウンタ以外の scale で報告された値は 0 ではなく「値なし」として扱う
    if isinstance(stat, CounterStatistic):
        return stat.uvalue
    return None


def normalizeStats(records: Iterable[tuple[DTVStatCommand, ScaledStatistic]]) -> FrontendStats:
    """
    DVBFrontend.getStats() の結果を FrontendStats にまとめる
    結果に含まれないプロパティは None (StatPair の場合は両方 None) のままになる

    Args:
        records (Iterable[tuple[DTVStatCommand, ScaledStatistic]]): 統計プロパティのコマンドと値の組

    Returns:
        FrontendStats: 正規化された統計情報
    """

    by_command = dict(records)
    return FrontendStats(
        signal_strength = toStatPair(by_command.get(DTVStatCommand.DTV_STAT_SIGNAL_STRENGTH)),
        cnr = toStatPair(by_command.get(DTVStatCommand.DTV_STAT_CNR)),
        pre_error_bit_count = toCounter(by_command.get(DTVStatCommand.DTV_STAT_PRE_ERROR_BIT_COUNT)),
        pre_total_bit_count = toCounter(by_command.get(DTVStatCommand.DTV_STAT_PRE_TOTAL_BIT_COUNT)),
        post_error_bit_count = toCounter(by_command.get(DTVStatCommand.DTV_STAT_POST_ERROR_BIT_COUNT)),
        post_total_bit_count = toCounter(by_command.get(DTVStatCommand.DTV_STAT_POST_TOTAL_BIT_COUNT)),
        error_block_count = toCounter(by_command.get(DTVStatCommand.DTV_STAT_ERROR_BLOCK_COUNT)),
        total_block_count = toCounter(by_command.get(DTVStatCommand.DTV_STAT_TOTAL_BLOCK_COUNT)),
    )
