from waspbroker.format import next_token


def test_splits_first_level():
    assert next_token(b"devices/cars/a") == (b"cars/a", "devices")


def test_last_level_has_no_rest():
    assert next_token(b"a") == (None, "a")


def test_empty_topic_yields_empty_token():
    assert next_token(b"") == (None, "")
    assert next_token(None) == (None, "")


def test_trailing_separator_leaves_empty_rest():
    rest, level = next_token(b"a/")
    assert level == "a"
    assert next_token(rest) == (None, "")


def test_walking_all_levels():
    topic = b"one/two/three"
    levels = []
    while True:
        topic, level = next_token(topic)
        if level == "":
            break
        levels.append(level)
    assert levels == ["one", "two", "three"]


def test_accepts_bytearray():
    assert next_token(bytearray(b"x/y")) == (b"y", "x")