import pytest

from anvilnotify.errors import (
    AppError,
    BlockedError,
    DatabaseError,
    NotFoundError,
    TemplateError,
)


@pytest.mark.parametrize(
    "cls", [BlockedError, NotFoundError, TemplateError, DatabaseError]
)
def test_subclasses_are_caught_as_app_error(cls):
    err = cls("boom")
    assert isinstance(err, AppError)
    assert err.message == "boom"
    with pytest.raises(AppError) as info:
        raise err
    assert info.value.message == "boom"


def test_str_is_the_message():
    err = NotFoundError("No active block_list entry with id 7")
    assert str(err) == "No active block_list entry with id 7"


def test_distinct_kinds_are_not_confused():
    err = BlockedError("blocked")
    assert isinstance(err, AppError)
    assert not isinstance(err, NotFoundError)
    assert not isinstance(err, TemplateError)
    assert err.message == "blocked"


def test_args_hold_the_message():
    err = TemplateError("unknown template")
    assert err.args == ("unknown template",)