from shipyard.events import EventTypes, emit_event, get_last_event, get_status_from_events, read_events


def test_status_progression_basic(tmp_path):
    journal = tmp_path / "api.events.ndjson"
    assert get_status_from_events(journal) == "unknown"

    emit_event(journal, EventTypes.DEPLOY_START, {"repo": "https://github.com/acme/api"})
    assert get_status_from_events(journal) == "queued"
    emit_event(journal, EventTypes.BUILD_DONE, {})
    assert get_status_from_events(journal) == "built"
    emit_event(journal, EventTypes.DONE, {})
    assert get_status_from_events(journal) == "deployed"
    emit_event(journal, EventTypes.UPDATE_START, {})
    assert get_status_from_events(journal) == "updating"
    emit_event(journal, EventTypes.ERROR, {"stage": "fetch"})
    assert get_status_from_events(journal) == "failed"


def test_malformed_lines_are_skipped(tmp_path):
    journal = tmp_path / "api.events.ndjson"
    emit_event(journal, EventTypes.DEPLOY_START)
    with open(journal, "a") as f:
        f.write("{truncated\n\n")
    emit_event(journal, EventTypes.FETCH_DONE, {"commit": "abc"})

    events = read_events(journal)
    assert [e["type"] for e in events] == ["DEPLOY_START", "FETCH_DONE"]
    assert get_last_event(journal)["data"] == {"commit": "abc"}


def test_unrecognized_event_type_is_unknown(tmp_path):
    journal = tmp_path / "api.events.ndjson"
    emit_event(journal, "SOMETHING_ELSE")
    assert get_status_from_events(journal) == "unknown"
