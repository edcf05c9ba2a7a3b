import math
import operator

import pandas as pd
import pytest

from targetkit.dag import build
from targetkit.dsl import cross_over, map_over, rep, target
from targetkit.errors import BranchNotFoundError
from targetkit.expr import call, ref
from targetkit.runner import Scheduler, Status, read_target
from targetkit.workers import WorkerPool


def double(x):
    return 2 * x


def add(a, b):
    return a + b


def inverse(x):
    return 1 / x


def square(i):
    return i * i


def make_frame():
    return pd.DataFrame({"a": [1, 2, 3], "b": [10, 20, 30]})


def row_total(row):
    return float(row["a"].iloc[0] + row["b"].iloc[0])


def mapped(reps=1):
    return [
        target("xs", call(list, ref("values"))),
        target("ys", call(double, ref("xs")), pattern=map_over("xs"), reps=reps),
        target("total", call(sum, ref("ys"))),
    ]


@pytest.mark.parametrize("length,reps", [(0, 3), (1, 3), (6, 3), (7, 3), (5, 1), (4, 10)])
def test_batch_count_is_ceil_of_length_over_reps(run, store, length, reps):
    values = list(range(length))
    report = run(mapped(reps), constants={"values": values})
    assert report.ok

    batches = report.branches["ys"]
    assert len(batches) == math.ceil(length / reps)
    sizes = [len(read_target(b, store)) for b in batches]
    assert sum(sizes) == length
    if batches:
        assert sizes[:-1] == [reps] * (len(batches) - 1)
        assert sizes[-1] == (length % reps or reps)

    assert read_target("ys", store) == [2 * v for v in values]
    assert read_target("total", store) == 2 * sum(values)


def test_batches_are_reported_under_their_parent(run):
    report = run(mapped(2), constants={"values": [1, 2, 3]})
    assert set(report.statuses()) == {"xs", "ys", "total"}
    everything = report.statuses(include_branches=True)
    for name in report.branches["ys"]:
        assert name.startswith("ys_")
        assert everything[name] is Status.SUCCEEDED
        assert report.results[name].parent == "ys"


def test_second_run_is_cached_including_branches(run):
    run(mapped(2), constants={"values": [1, 2, 3]})
    report = run(mapped(2), constants={"values": [1, 2, 3]})
    assert set(report.statuses(include_branches=True).values()) == {Status.CACHED}


def test_only_changed_elements_rerun(run, store):
    first = run(mapped(), constants={"values": [0, 1, 2, 3]})
    second = run(mapped(), constants={"values": [0, 1, 2, 9]})

    assert first.branches["ys"][:3] == second.branches["ys"][:3]
    assert first.branches["ys"][3] != second.branches["ys"][3]
    statuses = second.statuses(include_branches=True)
    assert [statuses[b] for b in second.branches["ys"]] == [
        Status.CACHED, Status.CACHED, Status.CACHED, Status.SUCCEEDED,
    ]
    assert statuses["ys"] is Status.SUCCEEDED
    assert read_target("total", store) == 2 * (0 + 1 + 2 + 9)

    graph = build(mapped(), constants={"values": [0, 1, 2, 9]})
    assert store.prune(graph.order) == [first.branches["ys"][3]]


def test_read_selected_branches(run, store):
    report = run(mapped(2), constants={"values": [1, 2, 3, 4, 5]})
    assert len(report.branches["ys"]) == 3
    assert read_target("ys", store, branches=[0]) == [2, 4]
    assert read_target("ys", store, branches=[2]) == [10]


def test_cross_iterates_the_product_first_name_outermost(run, store):
    specs = [
        target("a", [1, 2]),
        target("b", [10, 20, 30]),
        target("sums", call(add, ref("a"), ref("b")), pattern=cross_over("a", "b")),
    ]
    report = run(specs)
    assert len(report.branches["sums"]) == 6
    assert read_target("sums", store) == [11, 21, 31, 12, 22, 32]


def test_map_needs_equal_lengths(run):
    specs = [
        target("a", [1, 2]),
        target("b", [1]),
        target("sums", call(add, ref("a"), ref("b")), pattern=map_over("a", "b")),
        target("total", call(sum, ref("sums"))),
    ]
    report = run(specs)
    assert report.status("sums") is Status.ERRORED
    assert report.results["sums"].error_type == "InvalidPatternError"
    assert report.status("total") is Status.SKIPPED


def test_strings_are_not_split(run):
    specs = [target("s", "abc"), target("up", call(double, ref("s")), pattern=map_over("s"))]
    report = run(specs)
    assert report.results["up"].error_type == "InvalidPatternError"


def test_failed_branch_errors_the_parent_only(run, store):
    specs = [
        target("xs", [1, 2, 0, 4]),
        target("inv", call(inverse, ref("xs")), pattern=map_over("xs")),
        target("total", call(sum, ref("inv"))),
        target("other", 1),
    ]
    report = run(specs)
    batches = report.branches["inv"]
    statuses = report.statuses(include_branches=True)
    assert [statuses[b] for b in batches] == [
        Status.SUCCEEDED, Status.SUCCEEDED, Status.ERRORED, Status.SUCCEEDED,
    ]
    assert report.results[batches[2]].error_type == "ZeroDivisionError"
    assert statuses["inv"] is Status.ERRORED
    assert report.results["inv"].error_type == "BranchError"
    assert statuses["total"] is Status.SKIPPED
    assert statuses["other"] is Status.SUCCEEDED
    assert store.lookup("inv") is None
    assert store.lookup(batches[0]) is not None

    again = run(specs).statuses(include_branches=True)
    assert [again[b] for b in batches] == [
        Status.CACHED, Status.CACHED, Status.ERRORED, Status.CACHED,
    ]


def test_data_frames_branch_by_row(run, store):
    specs = [
        target("df", call(make_frame)),
        target("totals", call(row_total, ref("df")), pattern=map_over("df"), reps=2),
    ]
    report = run(specs)
    assert len(report.branches["totals"]) == 2
    assert read_target("totals", store) == [11.0, 22.0, 33.0]


def test_rep_runs_batches_times_reps(run, store):
    report = run(rep("sim", call(square, ref("sim_rep")), batches=3, reps=4))
    assert len(report.branches["sim"]) == 3
    assert read_target("sim", store) == [i * i for i in range(12)]


def test_branches_can_run_in_worker_processes(store, console):
    graph = build([
        target("xs", list(range(7))),
        target("ys", call(operator.mul, ref("xs"), 3), pattern=map_over("xs"), reps=2),
    ])
    with WorkerPool.with_processes(2, 2) as pool:
        report = Scheduler(store, console=console).run(graph, pool)
    assert report.ok
    assert read_target("ys", store) == [3 * i for i in range(7)]


def frame_of(x):
    return pd.DataFrame({"x": [x], "square": [x * x]})


def stack(frames):
    return pd.concat(frames, ignore_index=True)


def test_branch_frames_combine_into_a_csv_target(run, store):
    specs = [
        target("xs", [1, 2, 3]),
        target("frames", call(frame_of, ref("xs")), pattern=map_over("xs"), reps=2),
        target("table", call(stack, ref("frames")), format="csv"),
    ]
    report = run(specs)
    assert report.ok
    table = read_target("table", store)
    assert list(table["square"]) == [1, 4, 9]


def test_reading_a_missing_branch_position(run, store):
    run(mapped(2), constants={"values": [1, 2, 3]})
    for position in (2, 99, -1):
        with pytest.raises(BranchNotFoundError) as exc:
            read_target("ys", store, branches=[position])
        assert exc.value.count == 2
