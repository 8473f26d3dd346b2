import pytest

from optimistic import with_optimistic_update


def test_patch_kept_when_remote_call_succeeds():
    state = {'rows': ['a', 'b']}

    result = with_optimistic_update(
        lambda: state.update(rows=['a']),
        lambda: state.update(rows=['a', 'b']),
        lambda: "ok",
    )

    assert result == "ok"
    assert state['rows'] == ['a']


def test_patch_reverted_when_remote_call_fails():
    state = {'rows': ['a', 'b']}

    def remote():
        raise ConnectionError("offline")

    with pytest.raises(ConnectionError):
        with_optimistic_update(
            lambda: state.update(rows=['a']),
            lambda: state.update(rows=['a', 'b']),
            remote,
        )

    assert state['rows'] == ['a', 'b']


def test_rollback_error_does_not_hide_remote_error():
    def remote():
        raise ValueError("remote")

    def broken_inverse():
        raise RuntimeError("rollback")

    with pytest.raises(ValueError, match="remote"):
        with_optimistic_update(lambda: None, broken_inverse, remote)
