from databoard.fields import discover_fields, structure_of


def test_discover_parent_before_child():
    assert discover_fields({"a": {"b": 1}, "c": [{"d": 2}]}) == ["a", "a.b", "c", "c.d"]


def test_discover_samples_first_array_element_only():
    payload = [{"x": 1}, {"y": 2}]
    assert discover_fields(payload) == ["x"]


def test_discover_empty_array_contributes_nothing():
    assert discover_fields({"items": []}) == ["items"]
    assert discover_fields([]) == []


def test_discover_scalar_has_no_fields():
    assert discover_fields(42) == []
    assert discover_fields("text") == []


def test_structure_of_uses_js_type_names():
    value = {"s": "x", "n": 1, "f": 1.5, "b": True, "z": None, "l": [{"k": "v"}], "e": []}
    assert structure_of(value) == {
        "s": "string",
        "n": "number",
        "f": "number",
        "b": "boolean",
        "z": "object",
        "l": [{"k": "string"}],
        "e": [],
    }

