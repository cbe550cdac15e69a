import pytest

from product_importer.core.errors import NotFound
from product_importer.services.column_mapping import (
    BUILTIN_PROFILES,
    ResolvedProfile,
    apply_profile,
    load_profile,
    resolve_mapping,
)


def _profile(mapping, **settings):
    return ResolvedProfile(id="mp_test", name="Test", mapping=mapping, settings=settings)


def test_identity_mapping_without_directive():
    assert resolve_mapping(["title", "sku"], owner_id="u1") == {"title": "title", "sku": "sku"}


def test_explicit_mapping_wins_over_profile():
    lookups = []

    def lookup(profile_id, owner_id):
        lookups.append(profile_id)
        return _profile({"Name": "handle"})

    mapping = resolve_mapping(
        ["Name"],
        owner_id="u1",
        explicit_mapping={"Name": "title"},
        profile_id="mp_test",
        profile_lookup=lookup,
    )
    assert mapping == {"Name": "title"}
    assert lookups == []


def test_builtin_profile_never_queries_the_store():
    lookups = []

    def lookup(profile_id, owner_id):
        lookups.append(profile_id)
        return None

    mapping = resolve_mapping(
        ["Product Name", "price per yard", "Colour"],
        owner_id="u1",
        profile_id="builtin-fabric",
        profile_lookup=lookup,
    )
    assert mapping == {"Product Name": "title", "price per yard": "retail_price", "Colour": "Colour"}
    assert lookups == []


def test_unknown_profile_is_not_found():
    with pytest.raises(NotFound) as exc_info:
        load_profile("mp_missing", "u1", lambda profile_id, owner_id: None)
    assert exc_info.value.code == "mapping_profile_not_found"

    with pytest.raises(NotFound):
        load_profile("builtin-nope", "u1", None)


def test_case_and_whitespace_normalization():
    profile = _profile({" Title ": "title"}, auto_detect=False)
    assert apply_profile(["title", "TITLE  "], profile) == {"title": "title", "TITLE  ": "title"}


def test_case_sensitive_profile():
    profile = _profile({"Title": "title"}, case_sensitive=True, auto_detect=False, skip_unmapped=True)
    assert apply_profile(["Title", "title"], profile) == {"Title": "title"}


def test_skip_unmapped_drops_unknown_headers():
    profile = _profile({"Name": "title"}, auto_detect=False, skip_unmapped=True)
    assert apply_profile(["Name", "Extra"], profile) == {"Name": "title"}


def test_skip_unmapped_wins_over_auto_detect():
    profile = _profile({"Name": "title"}, auto_detect=True, skip_unmapped=True)
    assert apply_profile(["Name", "sku"], profile) == {"Name": "title"}

    profile = _profile({"Name": "title"}, auto_detect=False)
    assert apply_profile(["Name", "sku"], profile) == {"Name": "title", "sku": "sku"}


def test_first_matching_entry_wins_and_duplicates_are_kept():
    profile = _profile({"Name": "title", "name": "handle", "Label": "title"}, auto_detect=False)
    assert apply_profile(["Name", "Label"], profile) == {"Name": "title", "Label": "title"}


def test_builtin_registry_is_read_only():
    assert set(BUILTIN_PROFILES) == {"builtin-shopify", "builtin-woocommerce", "builtin-fabric"}
    with pytest.raises(TypeError):
        BUILTIN_PROFILES["builtin-fabric"].mapping["SKU"] = "handle"
