from codestyle_mcp.storage.terms import TermIndex


def test_term_index_basic(tmp_path):
    t = TermIndex(tmp_path / "terms.rocksdb")
    assert t.count() == 0
    t.add_entry(1, {"crud": 2, "mysql": 1})
    t.add_entry(2, {"crud": 1})
    assert t.get_postings("crud") == {1: 2, 2: 1}
    assert t.get_postings("mysql") == {1: 1}

    t.remove_entry(1, {"crud": 2, "mysql": 1})
    assert t.get_postings("crud") == {2: 1}
    # Empty posting lists are dropped entirely
    assert t.get_postings("mysql") == {}
    assert t.count() == 1
    t.commit()
    t.close()


def test_term_index_unicode_terms(tmp_path):
    t = TermIndex(tmp_path / "terms.rocksdb")
    t.set_postings("增删", {7: 3})
    assert dict(t.iter_items()) == {"增删": {7: 3}}
    t.close()


def test_postings_roundtrip_wide_ids():
    inp = {1: 1, 42: 5, (1 << 33): 2}
    out = TermIndex.deserialize_postings(TermIndex.serialize_postings(inp))
    assert out == inp


def test_postings_garbage_is_empty():
    assert TermIndex.deserialize_postings(b"not zlib") == {}
    assert TermIndex.deserialize_postings(TermIndex.serialize_postings({})) == {}


def test_term_counts_roundtrip():
    counts = {"crud": 2, "模板": 1}
    assert TermIndex.deserialize_term_counts(TermIndex.serialize_term_counts(counts)) == counts
