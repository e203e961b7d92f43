from matchmaking.sessions import SessionRegistry


def test_bind_last_connection_wins():
    reg = SessionRegistry()
    old, new = object(), object()
    assert reg.bind("u", old) is None
    assert reg.bind("u", new) is old
    assert reg.lookup("u") is new
    assert len(reg) == 1


def test_rebinding_same_handle_reports_nothing_superseded():
    reg = SessionRegistry()
    h = object()
    reg.bind("u", h)
    assert reg.bind("u", h) is None


def test_stale_unbind_keeps_newer_connection():
    reg = SessionRegistry()
    old, new = object(), object()
    reg.bind("u", old)
    reg.bind("u", new)
    assert reg.unbind("u", old) is False
    assert reg.lookup("u") is new
    assert reg.unbind("u", new) is True
    assert "u" not in reg
    assert reg.lookup("u") is None


def test_unbind_unknown_user():
    assert SessionRegistry().unbind("nobody", object()) is False
