from __future__ import annotations

from pathlib import Path

from khutbah_notes.services.routing import (
    RecordingControlAction,
    RecordingRouteAction,
    RouteAction,
    RouteActionStore,
    lecture_id_from_url,
    lecture_url,
    recording_action_from_url,
    recording_url,
)


def test_recording_links() -> None:
    url = recording_url(RecordingRouteAction.SHOW_SAVE_CARD)

    assert url == "khutbahnotesai://recording?action=showSaveCard"
    assert recording_action_from_url(url) is RecordingRouteAction.SHOW_SAVE_CARD
    assert (
        recording_action_from_url("khutbahnotesai://recording")
        is RecordingRouteAction.OPEN_RECORDING
    )
    assert (
        recording_action_from_url("khutbahnotesai://recording?action=dance")
        is RecordingRouteAction.OPEN_RECORDING
    )
    assert recording_action_from_url("https://recording?action=showSaveCard") is None
    assert recording_action_from_url("khutbahnotesai://lecture?action=showSaveCard") is None


def test_lecture_links_trim_and_validate() -> None:
    assert lecture_url(" L1 ") == "khutbahnotesai://lecture?lectureId=L1"
    assert lecture_id_from_url("khutbahnotesai://lecture?lectureId=%20L1%20") == "L1"
    assert lecture_id_from_url("khutbahnotesai://lecture?lectureId=") is None
    assert lecture_id_from_url("khutbahnotesai://lecture") is None
    assert lecture_id_from_url("khutbahnotesai://recording?lectureId=L1") is None
    assert lecture_id_from_url("otherapp://lecture?lectureId=L1") is None


def test_route_to_save_card_survives_relaunch(tmp_path: Path) -> None:
    path = tmp_path / "shared" / "route_actions.json"
    RouteActionStore(path).route_to_save_card(" L1 ")

    relaunched = RouteActionStore(path)

    expected = RouteAction(RecordingRouteAction.SHOW_SAVE_CARD, "L1")
    assert relaunched.peek_route_action() == expected
    assert relaunched.take_route_action() == expected
    assert relaunched.take_route_action() is None


def test_route_without_lecture_and_clear(tmp_path: Path) -> None:
    store = RouteActionStore(tmp_path / "route_actions.json")
    store.route_to_save_card("L1")

    store.set_route_action(RecordingRouteAction.OPEN_RECORDING)
    assert store.peek_route_action() == RouteAction(RecordingRouteAction.OPEN_RECORDING, None)

    store.clear_route_action()
    assert store.peek_route_action() is None


def test_control_actions_are_consumed_once(tmp_path: Path) -> None:
    store = RouteActionStore(tmp_path / "route_actions.json")
    store.route_to_save_card("L1")
    store.set_control_action(RecordingControlAction.PAUSE)

    assert store.take_control_action() is RecordingControlAction.PAUSE
    assert store.take_control_action() is None
    assert store.peek_route_action() is not None


def test_unreadable_or_unknown_values_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "route_actions.json"
    path.write_text("{broken", encoding="utf-8")
    store = RouteActionStore(path)

    assert store.peek_route_action() is None

    path.write_text(
        '{"recordingRouteAction": "teleport", "recordingControlAction": "rewind"}',
        encoding="utf-8",
    )
    assert store.peek_route_action() is None
    assert store.take_control_action() is None
