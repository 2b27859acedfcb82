import pytest

from collector.spoiled import GenericSpoiledReferenceStrategizer, is_spoiled


def test_default_mapping():
    s = GenericSpoiledReferenceStrategizer()
    assert s.decide("NEW", "ERROR") == "IGNORE"
    assert s.decide("UNCHANGED", "REJECTED") == "DELETE"
    assert s.decide("MODIFIED", "DELETED") == "DELETE"
    # unmapped outcome falls back
    assert s.decide("NEW", "UNCHANGED") == "DELETE"
    assert s.decide(None, None) == "DELETE"


def test_custom_mappings_and_fallback():
    s = GenericSpoiledReferenceStrategizer({"error": "delete"}, fallback="ignore")
    assert s.decide("NEW", "ERROR") == "DELETE"
    assert s.decide("NEW", "MODIFIED") == "IGNORE"


def test_per_prior_mapping_wins():
    s = GenericSpoiledReferenceStrategizer(per_prior={("UNCHANGED", "ERROR"): "DELETE"})
    assert s.decide("UNCHANGED", "ERROR") == "DELETE"
    assert s.decide("NEW", "ERROR") == "IGNORE"


def test_invalid_configuration_is_rejected():
    with pytest.raises(ValueError):
        GenericSpoiledReferenceStrategizer({"ERROR": "KEEP"})
    with pytest.raises(ValueError):
        GenericSpoiledReferenceStrategizer({"BROKEN": "DELETE"})
    with pytest.raises(ValueError):
        GenericSpoiledReferenceStrategizer(fallback="maybe")


def test_is_spoiled():
    assert is_spoiled("NEW", "ERROR")
    assert is_spoiled("UNCHANGED", "REJECTED")
    assert not is_spoiled(None, "ERROR")
    assert not is_spoiled("ERROR", "ERROR")
    assert not is_spoiled("DELETED", "REJECTED")
    assert not is_spoiled("NEW", "MODIFIED")
