import pytest

from targetkit.cache import FileStamp, Fingerprint, FingerprintStore, data_hash_of_files
from targetkit.dag import build
from targetkit.dsl import target
from targetkit.errors import TargetNotFoundError
from targetkit.expr import call, ref
from targetkit.model import Cue


def add_one(x):
    return x + 1


def record(name, **kwargs):
    values = dict(command_hash="c", depend_hash="d", format="object", data_hash="h")
    values.update(kwargs)
    return Fingerprint(name=name, **values)


def test_commit_and_lookup(store):
    store.commit(record("a"))
    fp = store.lookup("a")
    assert fp.command_hash == "c"
    assert fp.kind == "stem"
    assert store.names() == ["a"]
    assert not list(store.meta_dir.glob("*.tmp"))


def test_commit_replaces_the_record(store):
    store.commit(record("a"))
    store.commit(record("a", data_hash="h2"))
    assert store.require("a").data_hash == "h2"


def test_names_with_unsafe_characters(store):
    store.commit(record("fit/k=2"))
    assert store.meta_path("fit/k=2").parent == store.meta_dir
    assert store.names() == ["fit/k=2"]


def test_missing_and_corrupt_records(store):
    assert store.lookup("a") is None
    with pytest.raises(TargetNotFoundError):
        store.require("a")
    store.meta_path("a").write_text("{not json", encoding="utf-8")
    assert store.lookup("a") is None


def test_destroy(store):
    store.commit(record("a"))
    store.destroy()
    assert store.names() == []
    assert store.meta_dir.is_dir()


def test_prune_keeps_branches_of_kept_patterns(store):
    store.commit(record("ys", kind="pattern", children=["ys_1", "ys_2"]))
    store.commit(record("ys_1", kind="branch", parent="ys"))
    store.commit(record("ys_2", kind="branch", parent="ys"))
    store.commit(record("old"))
    assert store.prune(["ys"]) == ["old"]
    assert store.names() == ["ys", "ys_1", "ys_2"]


def test_file_stamp_reuses_hash_only_for_unchanged_files(tmp_path):
    path = tmp_path / "f.txt"
    path.write_text("one")
    stamp = FileStamp.of(path)
    assert FileStamp.of(path, stamp) is stamp

    forged = stamp.model_copy(update={"hash": "forged"})
    assert FileStamp.of(path, forged).hash == "forged"

    path.write_text("three")
    rehashed = FileStamp.of(path, forged)
    assert rehashed.hash != "forged"
    assert rehashed.hash != stamp.hash
    assert rehashed.size == 5


def test_data_hash_depends_on_path_and_content():
    a = FileStamp(path="a", hash="1", size=1, mtime_ns=0)
    b = FileStamp(path="b", hash="1", size=1, mtime_ns=0)
    assert data_hash_of_files([a]) != data_hash_of_files([b])
    assert data_hash_of_files([a, b]) != data_hash_of_files([b, a])


def test_check_reasons(run, store):
    specs = [target("a", 1), target("b", call(add_one, ref("a")))]
    graph = build(specs)
    assert store.check(graph["b"], graph).reason == "no record"

    run(specs)
    check = store.check(graph["b"], graph)
    assert not check
    assert check.reason == "up to date"

    changed = build([target("a", 1), target("b", call(add_one, ref("a")), format="json")])
    assert store.check(changed["b"], changed).reason == "format changed (object -> json)"

    store.invalidate("a")
    assert store.depend_hash(graph["b"], graph) is None
    assert store.check(graph["b"], graph).reason == "upstream record missing"


def test_check_respects_cue_flags(run, store):
    run([target("a", 1)])
    relaxed = build([target("a", 1, format="json", cue=Cue(format=False))])
    assert not store.is_stale(relaxed["a"], relaxed)
    always = build([target("a", 1, cue=Cue(mode="always"))])
    assert store.check(always["a"], always).reason == "cue: always"


def test_store_creates_its_layout(tmp_path):
    store = FingerprintStore(tmp_path / "deep" / "store")
    assert store.meta_dir.is_dir()
    assert store.objects_dir.is_dir()
