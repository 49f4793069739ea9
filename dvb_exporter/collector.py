
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, UnknownMetricFamily
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector
from pydantic import BaseModel, ConfigDict

from dvb_exporter.constants import (
    DeviceIdentity,
    DVBExporterError,
    FrontendInfo,
    FrontendStats,
    FrontendStatus,
    METRIC_DEFINITIONS,
    MetricDefinition,
    Observation,
    ObservationKind,
)
from dvb_exporter.discovery import DVBDeviceTree, EnumerationError
from dvb_exporter.frontend import DVBFrontend, FrontendIOError, FrontendOpenError
from dvb_exporter.normalizer import normalizeStats


logger = logging.getLogger(__name__)


class FrontendResult(BaseModel):
    """ 1つのフロントエンドからの収集結果 (成功時は observations、失敗時は error が入る) """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    identity: DeviceIdentity
    observations: list[Observation] = []
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CollectionPass(BaseModel):
    """ 1回の収集 (スクレイプ1回分) の結果 """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    # fmt: off
    results: list[FrontendResult] = []                 # フロントエンドごとの収集結果
    enumeration_errors: list[EnumerationError] = []    # デバイスツリーの列挙に失敗したときの例外
    duration: float = 0.0                              # 収集に掛かった時間 (秒)
    # fmt: on

    @property
    def observations(self) -> list[Observation]:
        return [observation for result in self.results for observation in result.observations]

    @property
    def errors(self) -> list[Exception]:
        errors: list[Exception] = list(self.enumeration_errors)
        errors.extend(result.error for result in self.results if result.error is not None)
        return errors


class DVBCollector:
    """
    デバイスツリーの列挙 → フロントエンドごとの読み取り → 正規化 → Observation の生成を行うクラス
    あるフロントエンドで発生したエラーは、そのフロントエンドの Observation を欠落させるだけで、他のフロントエンドには影響しない
    """


    def __init__(self,
        device_tree: DVBDeviceTree,
        frontend_opener: Callable[[DeviceIdentity], DVBFrontend] | None = None,
    ) -> None:
        """
        DVBCollector を初期化する

        Args:
            device_tree (DVBDeviceTree): 列挙対象のデバイスツリー
            frontend_opener (Callable[[DeviceIdentity], DVBFrontend] | None, optional): フロントエンドをオープンする関数. Defaults to DVBFrontend.open (device_tree.root 配下).
        """

        self._device_tree = device_tree
        if frontend_opener is None:
            frontend_opener = lambda identity: DVBFrontend.open(identity, root=device_tree.root)
        self._frontend_opener = frontend_opener


    def collect(self) -> list[Observation]:
        return self.collectPass().observations


    def collectPass(self) -> CollectionPass:
        """
        全フロントエンドから状態と統計情報を収集する

        Returns:
            CollectionPass: 収集結果
        """

        start_time = time.perf_counter()
        collection = CollectionPass()

        # アダプタの一覧が取得できなければ、収集対象が存在しないのでこの回の収集は打ち切る
        try:
            adapters = self._device_tree.listAdapters()
        except EnumerationError as ex:
            logger.error(f'Failed to list adapters: {ex}')
            collection.enumeration_errors.append(ex)
            collection.duration = time.perf_counter() - start_time
            return collection

        for adapter in adapters:
            # 一部のアダプタのフロントエンドが列挙できなくても、他のアダプタの収集は続ける
            try:
                frontends = self._device_tree.listFrontends(adapter)
            except EnumerationError as ex:
                logger.error(f'Failed to list frontends of adapter{adapter}: {ex}')
                collection.enumeration_errors.append(ex)
                continue

            for frontend in frontends:
                result = self.collectFromFrontend(DeviceIdentity(adapter=adapter, frontend=frontend))
                if result.error is not None:
                    logger.error(f'Failed to collect from {result.identity}: {result.error}')
                collection.results.append(result)

        collection.duration = time.perf_counter() - start_time
        return collection


    def collectFromFrontend(self, identity: DeviceIdentity) -> FrontendResult:
        """
        1つのフロントエンドから状態と統計情報を読み取り、Observation のリストを生成する
        エラーは例外として送出せず、FrontendResult.error に入れて返す

        Args:
            identity (DeviceIdentity): フロントエンドの識別子

        Returns:
            FrontendResult: 収集結果
        """

        try:
            frontend = self._frontend_opener(identity)
        except FrontendOpenError as ex:
            return FrontendResult(identity=identity, error=ex)

        # with を抜けるときに、どの経路でも必ずデバイスファイルがクローズされる
        with frontend:
            try:
                status = frontend.readStatus()
                stats = normalizeStats(frontend.getStats())
            except DVBExporterError as ex:
                return FrontendResult(identity=identity, error=ex)
            except Exception as ex:
                # 想定外の例外でも他のフロントエンドの収集は止めない
                logger.exception(f'Unexpected error while reading {identity}')
                return FrontendResult(identity=identity, error=ex)

            # チューナー名の取得は補助的な情報なので、失敗してもフロントエンド自体はエラーにしない
            info: FrontendInfo | None = None
            try:
                info = frontend.getInfo()
            except FrontendIOError as ex:
                logger.debug(f'Failed to get frontend info of {identity}: {ex}')

        return FrontendResult(identity=identity, observations=buildObservations(identity, status, stats, info))


def bitsToBytes(bits: int | None) -> float | None:
    if bits is None:
        return None
    return bits / 8


def buildObservations(
    identity: DeviceIdentity,
    status: FrontendStatus,
    stats: FrontendStats,
    info: FrontendInfo | None = None,
) -> list[Observation]:
    """
    1つのフロントエンドの状態と統計情報から Observation のリストを生成する
    値がない統計情報の Observation は生成しない (0 としては出力しない)

    Args:
        identity (DeviceIdentity): フロントエンドの識別子
        status (FrontendStatus): フロントエンドの状態
        stats (FrontendStats): 正規化された統計情報
        info (FrontendInfo | None, optional): フロントエンドの情報. Defaults to None.

    Returns:
        list[Observation]: Observation のリスト
    """

    labels = identity.labels
    observations: list[Observation] = []

    # 状態フラグは常に 7 つ全て出力する
    for flag in FrontendStatus.flagNames():
        observations.append(Observation(
            name = 'status',
            labels = {'status': flag, **labels},
            value = 1.0 if getattr(status, flag) is True else 0.0,
            kind = ObservationKind.STATUS,
        ))

    if info is not None:
        observations.append(Observation(
            name = 'info',
            labels = {**labels, 'name': info.name, 'delivery_system': ','.join(info.delivery_systems)},
            value = 1.0,
            kind = ObservationKind.GAUGE,
        ))

    # ビット数で報告されるカウンタはバイト数に換算して出力する
    values: list[tuple[str, float | int | None]] = [
        ('signal_strength_decibels', stats.signal_strength.decibel),
        ('signal_strength_ratio', stats.signal_strength.ratio),
        ('CNR_decibels', stats.cnr.decibel),
        ('CNR_ratio', stats.cnr.ratio),
        ('pre_error_bytes_total', bitsToBytes(stats.pre_error_bit_count)),
        ('pre_bytes_total', bitsToBytes(stats.pre_total_bit_count)),
        ('post_error_bytes_total', bitsToBytes(stats.post_error_bit_count)),
        ('post_bytes_total', bitsToBytes(stats.post_total_bit_count)),
        ('error_blocks_total', stats.error_block_count),
        ('blocks_total', stats.total_block_count),
    ]
    for name, value in values:
        if value is None:
            continue
        observations.append(Observation(
            name = name,
            labels = dict(labels),
            value = float(value),
            kind = METRIC_DEFINITIONS[name].kind,
        ))

    return observations


class PrometheusCollector(Collector):
    """
    DVBCollector の Observation を Prometheus のメトリクスとして公開するカスタムコレクター
    スクレイプのたびに DVBCollector.collectPass() を実行する
    """


    def __init__(self, collector: DVBCollector, namespace: str = 'dvb', subsystem: str = 'frontend') -> None:
        self._collector = collector
        self._namespace = namespace
        self._subsystem = subsystem


    def describe(self) -> Iterator[Metric]:
        # レジストリへの登録時にデバイスへアクセスしないよう、サンプルを含まないメトリクスだけを返す
        for definition in METRIC_DEFINITIONS.values():
            yield self.__newFamily(definition)
        yield from self.__newExporterFamilies()


    def collect(self) -> Iterator[Metric]:
        collection = self._collector.collectPass()

        families: dict[str, Metric] = {}
        for observation in collection.observations:
            definition = METRIC_DEFINITIONS[observation.name]
            if observation.name not in families:
                families[observation.name] = self.__newFamily(definition)
            families[observation.name].add_metric(  # type: ignore[attr-defined]
                [observation.labels[label] for label in definition.labelnames],
                observation.value,
            )

        # 定義順に出力する
        for name in METRIC_DEFINITIONS:
            if name in families:
                yield families[name]

        duration, errors = self.__newExporterFamilies()
        duration.add_metric([], collection.duration)
        errors.add_metric([], len(collection.errors))
        yield duration
        yield errors


    def __newFamily(self, definition: MetricDefinition) -> Metric:
        name = f'{self._namespace}_{self._subsystem}_{definition.name}'
        if definition.kind == ObservationKind.STATUS:
            return UnknownMetricFamily(name, definition.documentation, labels=definition.labelnames)
        elif definition.kind == ObservationKind.GAUGE:
            return GaugeMetricFamily(name, definition.documentation, labels=definition.labelnames)
        elif definition.kind == ObservationKind.COUNTER:
            return CounterMetricFamily(name, definition.documentation, labels=definition.labelnames)
        else:
            assert False, f'Unknown observation kind: {definition.kind}'


    def __newExporterFamilies(self) -> tuple[GaugeMetricFamily, GaugeMetricFamily]:
        return (
            GaugeMetricFamily(
                f'{self._namespace}_exporter_collect_duration_seconds',
                'Time spent collecting metrics from the DVB frontend devices.',
                labels = [],
            ),
            GaugeMetricFamily(
                f'{self._namespace}_exporter_collect_errors',
                'Number of errors that occurred in the last collection.',
                labels = [],
            ),
        )
