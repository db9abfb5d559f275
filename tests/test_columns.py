from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config import DEFAULT_SELECTED_COLUMNS, PINNED_COLUMNS, STATION_COLUMNS
from core.columns import (
    ColumnCatalog,
    ColumnSelection,
    GroupState,
    UnknownColumnError,
    group_states,
)
from core.models import ColumnCategory, ColumnId


STRUCTURE = {
    "public_data": {"Batt": "", "PTemp": ""},
    "status_data": {"OSVersion": ""},
    "measurements_data": {"RH": "", "Rain_mm": ""},
}


def _catalog():
    return ColumnCatalog.from_column_structure(STRUCTURE)


def test_column_id_round_trips_display_id():
    column = ColumnId(ColumnCategory.PUBLIC_DATA, "Batt")

    assert column.display_id == "public_data.Batt"
    assert ColumnId.parse("public_data.Batt") == column
    assert ColumnId.parse("measurements_data.WS.avg").key == "WS.avg"
    assert ColumnId.parse("ip_address") == ColumnId(ColumnCategory.STATION, "ip_address")
    # Unknown prefixes are plain station fields
    assert ColumnId.parse("other.Batt").category is ColumnCategory.STATION


def test_data_groups_lead_with_timestamp_column():
    catalog = _catalog()

    assert catalog.group("station").column_ids == STATION_COLUMNS
    assert catalog.group("public-data").column_ids == (
        "public_timestamp", "public_data.Batt", "public_data.PTemp",
    )
    assert catalog.group("measurements").column_ids[0] == "measurements_timestamp"


def test_unloaded_category_is_an_empty_group():
    catalog = ColumnCatalog.from_column_structure({"public_data": {"Batt": ""}})
    selection = ColumnSelection(catalog)

    assert catalog.group("status-data").column_ids == ()
    assert selection.group_state("status-data") is GroupState.NONE


def test_headers_and_fields():
    catalog = _catalog()

    assert catalog.header("ip_address") == "IP Address"
    assert catalog.field("ip_address") == "ip"
    assert catalog.header("status_data.OSVersion") == "Status: OSVersion"
    assert catalog.field("status_data.OSVersion") == "status_data.OSVersion"
    assert catalog.header("public_timestamp") == "Public: Timestamp"


def test_default_selection_and_pinned_columns():
    selection = ColumnSelection(_catalog())

    assert selection.selected == frozenset(DEFAULT_SELECTED_COLUMNS)
    visible = selection.visible_columns()
    assert tuple(visible[:3]) == PINNED_COLUMNS
    # Display order follows the catalogue, not the default tuple
    assert visible[3:] == [c for c in STATION_COLUMNS if c in DEFAULT_SELECTED_COLUMNS]


def test_unknown_saved_ids_are_dropped():
    selection = ColumnSelection(_catalog(), ["label", "public_data.Gone", "nope"])

    assert selection.selected == frozenset({"label"})


@pytest.mark.parametrize("selected, expected", [
    ([], GroupState.NONE),
    (["public_timestamp"], GroupState.SOME),
    (["public_timestamp", "public_data.Batt", "public_data.PTemp"], GroupState.ALL),
    (["label", "public_data.PTemp"], GroupState.SOME),
])
def test_group_state_is_exactly_one_of_all_some_none(selected, expected):
    selection = ColumnSelection(_catalog(), selected or ["label"])

    assert selection.group_state("public-data") is expected


def test_toggle_group_round_trip_leaves_other_ids_alone():
    selection = ColumnSelection(_catalog(), ["label", "public_data.Batt", "status_data.OSVersion"])
    before = selection.selected

    selection.toggle_group("public-data", True)
    assert selection.group_state("public-data") is GroupState.ALL
    selection.toggle_group("public-data", False)

    group_ids = set(_catalog().group("public-data").column_ids)
    assert selection.selected - group_ids == before - group_ids
    assert not (selection.selected & group_ids)


def test_toggle_unknown_column_raises():
    selection = ColumnSelection(_catalog())

    with pytest.raises(UnknownColumnError):
        selection.toggle_column("public_data.Missing", True)
    with pytest.raises(UnknownColumnError):
        selection.toggle_group("bogus", True)


def test_changes_are_reported_except_empty_selection():
    reported = []
    selection = ColumnSelection(_catalog(), on_change=reported.append)

    selection.toggle_column("status_data.OSVersion", True)
    selection.hide_all()
    selection.show_all()

    assert len(reported) == 2
    assert "status_data.OSVersion" in reported[0]
    assert reported[1] == _catalog().all_column_ids()


def test_reset_to_default_restores_defaults():
    selection = ColumnSelection(_catalog())
    selection.show_all()
    selection.reset_to_default()

    assert selection.selected == frozenset(DEFAULT_SELECTED_COLUMNS)
    states = group_states(selection)
    assert states["station"] is GroupState.SOME
    assert states["public-data"] is GroupState.NONE
