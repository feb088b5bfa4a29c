from datetime import datetime

from conftest import record

from biosync.data.models import AttendanceRecord, EmployeeDeviceMapping
from biosync.services.identity import MALFORMED, RESOLVED, UNMAPPED, IdentityMap


def test_three_way_classification():
    ident = IdentityMap([EmployeeDeviceMapping(employee_id=10, device_user_id="1")], device_id=1)

    assert ident.classify(record(1)) == (RESOLVED, 10)
    assert ident.classify(record(2)) == (UNMAPPED, None)
    assert ident.classify(AttendanceRecord(user_id="", user_sn=0, timestamp=datetime(2025, 1, 1)))[0] == MALFORMED
    assert ident.classify(AttendanceRecord(user_id="1", user_sn=0, timestamp=None))[0] == MALFORMED


def test_device_scoped_mapping_wins_over_global():
    mappings = [
        EmployeeDeviceMapping(employee_id=10, device_user_id="7"),
        EmployeeDeviceMapping(employee_id=20, device_user_id="7", device_id=2),
    ]
    assert IdentityMap(mappings, device_id=1).get("7") == 10
    assert IdentityMap(mappings, device_id=2).get("7") == 20


def test_shared_device_user_id_is_a_conflict():
    mappings = [
        EmployeeDeviceMapping(employee_id=10, device_user_id="7", device_id=1),
        EmployeeDeviceMapping(employee_id=11, device_user_id="7", device_id=1),
        EmployeeDeviceMapping(employee_id=12, device_user_id="8"),
    ]
    ident = IdentityMap(mappings, device_id=1)

    res = ident.resolve_all([record(7), record(8), record(9)])

    assert [emp for _, emp in res.resolved] == [12]
    assert res.conflicting_ids == {"7"}
    assert res.unmapped_ids == {"9"}
    assert res.skipped == 2


def test_one_employee_on_several_terminals():
    mappings = [
        EmployeeDeviceMapping(employee_id=10, device_user_id="3", device_id=1),
        EmployeeDeviceMapping(employee_id=10, device_user_id="44", device_id=2),
    ]
    assert IdentityMap(mappings, device_id=1).get("3") == 10
    assert IdentityMap(mappings, device_id=2).get("44") == 10
    assert IdentityMap(mappings, device_id=2).get("3") is None


def test_lookup_normalises_device_user_ids():
    ident = IdentityMap([EmployeeDeviceMapping(employee_id=10, device_user_id=" 42 ")], device_id=1)

    assert ident.get(42) == 10
    assert ident.classify(record(42)) == (RESOLVED, 10)
