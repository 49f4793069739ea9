import pytest

from dvb_exporter.discovery import DVBDeviceTree, EnumerationError


def test_list_adapters_skips_non_matching_entries(make_device_tree):
    root = make_device_tree({0: [0], 2: [0]}, extra_entries=("notanadapter",))

    assert DVBDeviceTree(root).listAdapters() == [0, 2]


def test_list_adapters_requires_full_name_match_and_directory(make_device_tree):
    root = make_device_tree({1: [0]}, extra_entries=("adapter3x", "xadapter4"))
    (root / "adapter5").touch()  # a file, not an adapter directory

    assert DVBDeviceTree(root).listAdapters() == [1]


def test_list_adapters_sorted_numerically(make_device_tree):
    root = make_device_tree({10: [0], 2: [0], 0: [0]})

    assert DVBDeviceTree(root).listAdapters() == [0, 2, 10]


def test_list_adapters_empty_root_is_not_an_error(tmp_path):
    root = tmp_path / "dvb"
    root.mkdir()

    assert DVBDeviceTree(root).listAdapters() == []


def test_list_adapters_missing_root_raises(tmp_path):
    tree = DVBDeviceTree(tmp_path / "missing")

    with pytest.raises(EnumerationError) as excinfo:
        tree.listAdapters()

    assert isinstance(excinfo.value.__cause__, FileNotFoundError)
    assert "missing" in str(excinfo.value)


def test_list_frontends_ignores_other_device_nodes(make_device_tree):
    root = make_device_tree({0: [1, 0]})

    assert DVBDeviceTree(root).listFrontends(0) == [0, 1]


def test_list_frontends_skips_directories(make_device_tree):
    root = make_device_tree({0: [0]})
    (root / "adapter0" / "frontend7").mkdir()

    assert DVBDeviceTree(root).listFrontends(0) == [0]


def test_list_frontends_missing_adapter_raises(make_device_tree):
    root = make_device_tree({0: [0]})

    with pytest.raises(EnumerationError):
        DVBDeviceTree(root).listFrontends(3)


def test_leading_zero_entries_are_not_devices(make_device_tree):
    root = make_device_tree({1: [0]}, extra_entries=("adapter01", "adapter00"))
    (root / "adapter1" / "frontend01").touch()

    tree = DVBDeviceTree(root)

    assert tree.listAdapters() == [1]
    assert tree.listFrontends(1) == [0]
