import ctypes
import errno

import pytest

from dvb_exporter.constants import (
    CounterStatistic,
    DecibelStatistic,
    DeviceIdentity,
    DTV_ENUM_DELSYS,
    DTVStatCommand,
    FEScale,
    RelativeStatistic,
    UnavailableStatistic,
)
from dvb_exporter.frontend import (
    decodeFrontendStats,
    decodeScaledStatistic,
    decodeStatus,
    DtvFeStats,
    DtvProperty,
    DtvStats,
    DVBFrontend,
    FE_GET_INFO,
    FE_GET_PROPERTY,
    FE_READ_STATUS,
    FrontendIOError,
    FrontendOpenError,
    StatDecodeError,
)


IDENTITY = DeviceIdentity(adapter=0, frontend=0)


@pytest.fixture
def frontend(make_device_tree):
    root = make_device_tree({0: [0]})
    with DVBFrontend.open(IDENTITY, root=root) as fe:
        yield fe


def _set_stat(prop, length, scale=FEScale.FE_SCALE_NOT_AVAILABLE, svalue=None, uvalue=None):
    prop.u.st.len = length
    prop.u.st.stat[0].scale = scale
    if svalue is not None:
        prop.u.st.stat[0].u.svalue = svalue
    if uvalue is not None:
        prop.u.st.stat[0].u.uvalue = uvalue


def test_struct_layout_matches_kernel_headers():
    assert ctypes.sizeof(DtvStats) == 9
    assert ctypes.sizeof(DtvFeStats) == 37
    assert ctypes.sizeof(DtvProperty) == 76
    assert FE_READ_STATUS == 0x80046F45
    assert FE_GET_INFO == 0x80A86F3D


@pytest.mark.parametrize("structure", [DtvStats, DtvFeStats, DtvProperty, DtvProperty._u])
def test_packed_structs_declare_explicit_layout(structure):
    assert structure._pack_ == 1
    assert structure._layout_ == "ms"


@pytest.mark.skipif(ctypes.sizeof(ctypes.c_void_p) != 8, reason="64-bit ioctl number")
def test_get_property_ioctl_number_on_64bit():
    assert FE_GET_PROPERTY == 0x80106F53


def test_decode_status_only_lock_bit():
    status = decodeStatus(0x10)

    assert status.has_lock is True
    assert status.has_signal is False
    assert status.has_carrier is False
    assert status.has_viterbi is False
    assert status.has_sync is False
    assert status.timedout is False
    assert status.reinit is False


def test_decode_status_full_lock_and_unknown_bits():
    assert decodeStatus(0x1F).model_dump() == {
        "has_signal": True,
        "has_carrier": True,
        "has_viterbi": True,
        "has_sync": True,
        "has_lock": True,
        "timedout": False,
        "reinit": False,
    }
    assert not any(decodeStatus(0x80 | 0x100 | 0x8000_0000).model_dump().values())


def test_decode_scaled_statistic_branches_on_scale():
    raw = DtvStats()

    raw.scale = FEScale.FE_SCALE_DECIBEL
    raw.u.svalue = -5000
    assert decodeScaledStatistic(raw) == DecibelStatistic(svalue=-5000)

    raw.scale = FEScale.FE_SCALE_RELATIVE
    raw.u.uvalue = 65535
    assert decodeScaledStatistic(raw) == RelativeStatistic(uvalue=65535)

    raw.scale = FEScale.FE_SCALE_COUNTER
    raw.u.uvalue = 2**63 + 1
    assert decodeScaledStatistic(raw) == CounterStatistic(uvalue=2**63 + 1)

    raw.scale = FEScale.FE_SCALE_NOT_AVAILABLE
    assert decodeScaledStatistic(raw) == UnavailableStatistic(scale=0)

    raw.scale = 7
    assert decodeScaledStatistic(raw) == UnavailableStatistic(scale=7)


def test_decode_frontend_stats_length_checks():
    fe_stats = DtvFeStats()
    assert decodeFrontendStats(fe_stats) is None

    fe_stats.len = 5
    with pytest.raises(StatDecodeError):
        decodeFrontendStats(fe_stats)

    fe_stats.len = 4
    fe_stats.stat[0].scale = FEScale.FE_SCALE_COUNTER
    fe_stats.stat[0].u.uvalue = 42
    fe_stats.stat[1].scale = FEScale.FE_SCALE_COUNTER
    fe_stats.stat[1].u.uvalue = 99
    assert decodeFrontendStats(fe_stats) == CounterStatistic(uvalue=42)


def test_open_missing_device_raises_open_error(tmp_path):
    with pytest.raises(FrontendOpenError) as excinfo:
        DVBFrontend.open(DeviceIdentity(adapter=3, frontend=1), root=tmp_path)

    assert excinfo.value.__cause__.errno == errno.ENOENT
    assert "adapter3/frontend1" in str(excinfo.value)


def test_context_manager_closes_and_close_is_idempotent(make_device_tree):
    root = make_device_tree({0: [0]})

    with DVBFrontend.open(IDENTITY, root=root) as fe:
        assert fe.closed is False
        assert fe.identity == IDENTITY

    assert fe.closed is True
    fe.close()
    assert fe.closed is True


def test_context_manager_closes_on_error(make_device_tree):
    root = make_device_tree({0: [0]})

    with pytest.raises(RuntimeError):
        with DVBFrontend.open(IDENTITY, root=root) as fe:
            raise RuntimeError("boom")

    assert fe.closed is True


def test_read_status(monkeypatch, frontend):
    def fake_ioctl(fd, request, arg, *args):
        assert request == FE_READ_STATUS
        arg.value = 0x10 | 0x01
        return 0

    monkeypatch.setattr("dvb_exporter.frontend.fcntl.ioctl", fake_ioctl)

    status = frontend.readStatus()

    assert status.has_lock is True
    assert status.has_signal is True
    assert status.has_carrier is False


def test_read_status_ioctl_failure(monkeypatch, frontend):
    def fake_ioctl(fd, request, arg, *args):
        raise OSError(errno.ENOTTY, "Inappropriate ioctl for device")

    monkeypatch.setattr("dvb_exporter.frontend.fcntl.ioctl", fake_ioctl)

    with pytest.raises(FrontendIOError) as excinfo:
        frontend.readStatus()

    assert "FE_READ_STATUS" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, OSError)


def test_get_stats_single_batched_query(monkeypatch, frontend):
    calls = []

    def fake_ioctl(fd, request, arg, *args):
        assert request == FE_GET_PROPERTY
        calls.append([arg.props[i].cmd for i in range(arg.num)])
        props = {arg.props[i].cmd: arg.props[i] for i in range(arg.num)}
        _set_stat(props[DTVStatCommand.DTV_STAT_SIGNAL_STRENGTH], 1, FEScale.FE_SCALE_DECIBEL, svalue=-5000)
        _set_stat(props[DTVStatCommand.DTV_STAT_CNR], 1, FEScale.FE_SCALE_RELATIVE, uvalue=65535)
        _set_stat(props[DTVStatCommand.DTV_STAT_PRE_ERROR_BIT_COUNT], 1, FEScale.FE_SCALE_COUNTER, uvalue=800)
        _set_stat(props[DTVStatCommand.DTV_STAT_PRE_TOTAL_BIT_COUNT], 0)
        _set_stat(props[DTVStatCommand.DTV_STAT_POST_ERROR_BIT_COUNT], 9, FEScale.FE_SCALE_COUNTER, uvalue=1)
        _set_stat(props[DTVStatCommand.DTV_STAT_POST_TOTAL_BIT_COUNT], 1)
        _set_stat(props[DTVStatCommand.DTV_STAT_ERROR_BLOCK_COUNT], 1, FEScale.FE_SCALE_COUNTER, uvalue=0)
        _set_stat(props[DTVStatCommand.DTV_STAT_TOTAL_BLOCK_COUNT], 1, FEScale.FE_SCALE_COUNTER, uvalue=1234)
        return 0

    monkeypatch.setattr("dvb_exporter.frontend.fcntl.ioctl", fake_ioctl)

    stats = frontend.getStats()

    assert calls == [list(range(62, 70))]
    assert stats == [
        (DTVStatCommand.DTV_STAT_SIGNAL_STRENGTH, DecibelStatistic(svalue=-5000)),
        (DTVStatCommand.DTV_STAT_CNR, RelativeStatistic(uvalue=65535)),
        (DTVStatCommand.DTV_STAT_PRE_ERROR_BIT_COUNT, CounterStatistic(uvalue=800)),
        (DTVStatCommand.DTV_STAT_POST_TOTAL_BIT_COUNT, UnavailableStatistic(scale=0)),
        (DTVStatCommand.DTV_STAT_ERROR_BLOCK_COUNT, CounterStatistic(uvalue=0)),
        (DTVStatCommand.DTV_STAT_TOTAL_BLOCK_COUNT, CounterStatistic(uvalue=1234)),
    ]


def test_get_stats_ioctl_failure(monkeypatch, frontend):
    def fake_ioctl(fd, request, arg, *args):
        raise OSError(errno.EOPNOTSUPP, "Operation not supported")

    monkeypatch.setattr("dvb_exporter.frontend.fcntl.ioctl", fake_ioctl)

    with pytest.raises(FrontendIOError):
        frontend.getStats()


def test_get_info(monkeypatch, frontend):
    def fake_ioctl(fd, request, arg, *args):
        if request == FE_GET_INFO:
            arg.name = b"Sony CXD2856ER"
        elif request == FE_GET_PROPERTY:
            prop = arg.props[0]
            assert arg.num == 1
            assert prop.cmd == DTV_ENUM_DELSYS
            prop.u.buffer.len = 3
            prop.u.buffer.data[0] = 8
            prop.u.buffer.data[1] = 9
            prop.u.buffer.data[2] = 200
        else:
            pytest.fail(f"unexpected ioctl {request:#x}")
        return 0

    monkeypatch.setattr("dvb_exporter.frontend.fcntl.ioctl", fake_ioctl)

    info = frontend.getInfo()

    assert info.name == "Sony CXD2856ER"
    assert info.delivery_systems == ["ISDBT", "ISDBS", "200"]
