from memory import BaseTruthDiff, apply_base_truth_diff, normalize_base_truth_diff


def test_apply_runs_remove_then_update_then_add() -> None:
    base = ["Python version: 3.10", "Use recursion for sort"]
    diff = BaseTruthDiff(
        add=["User prefers iterative implementation"],
        update=["Python version: 3.12"],
        remove=["recursion"],
    )

    facts, stats = apply_base_truth_diff(base, diff)

    assert facts == ["Python version: 3.12", "User prefers iterative implementation"]
    assert (stats.removed, stats.updated, stats.added) == (1, 1, 1)


def test_apply_is_idempotent() -> None:
    base = ["Python version: 3.10", "Use recursion for sort"]
    diff = BaseTruthDiff(
        add=["User prefers iterative implementation"],
        update=["Python version: 3.12"],
        remove=["recursion"],
    )
    once, _ = apply_base_truth_diff(base, diff)
    twice, _ = apply_base_truth_diff(once, diff)
    assert twice == once


def test_update_can_reintroduce_a_removed_topic() -> None:
    facts, _ = apply_base_truth_diff(
        ["Editor: vim"],
        BaseTruthDiff(update=["Editor: emacs"], remove=["editor"]),
    )
    assert facts == ["Editor: emacs"]


def test_update_without_matching_key_is_an_add() -> None:
    facts, stats = apply_base_truth_diff(["Name: Ada"], BaseTruthDiff(update=["City: Pune"]))
    assert facts == ["Name: Ada", "City: Pune"]
    assert stats.added == 1
    assert stats.updated == 0


def test_update_key_without_colon_uses_leading_characters() -> None:
    long_fact = "x" * 48 + " original tail"
    facts, stats = apply_base_truth_diff(
        [long_fact], BaseTruthDiff(update=["x" * 48 + " replaced tail"])
    )
    assert facts == ["x" * 48 + " replaced tail"]
    assert stats.updated == 1


def test_add_skips_case_insensitive_duplicates() -> None:
    facts, stats = apply_base_truth_diff(
        ["Prefers dark mode"], BaseTruthDiff(add=["prefers DARK mode", "Uses Linux"])
    )
    assert facts == ["Prefers dark mode", "Uses Linux"]
    assert stats.added == 1


def test_cap_drops_oldest_entries_first() -> None:
    base = [f"Fact {index}: value" for index in range(5)]
    facts, _ = apply_base_truth_diff(
        base,
        BaseTruthDiff(add=["Fact 5: value", "Fact 6: value"]),
        max_base_truth_entries=5,
    )
    assert facts == [f"Fact {index}: value" for index in range(2, 7)]


def test_normalize_coerces_and_bounds_raw_input() -> None:
    diff = normalize_base_truth_diff(
        {
            "add": ["  spaced   out  ", "", 42, "SPACED OUT", "y" * 50],
            "update": "not-a-list",
            "remove": [None, "token"],
        },
        max_entries_per_operation=3,
        max_fact_chars=10,
    )
    assert diff.add == ["spaced out", "y" * 10]
    assert diff.update == []
    assert diff.remove == ["token"]


def test_normalize_caps_entries_per_operation() -> None:
    diff = normalize_base_truth_diff(
        {"add": [f"fact {index}" for index in range(10)]}, max_entries_per_operation=4
    )
    assert diff.add == ["fact 0", "fact 1", "fact 2", "fact 3"]


def test_normalize_rejects_non_mapping() -> None:
    assert normalize_base_truth_diff(["add"]).is_empty()
    assert normalize_base_truth_diff(None).is_empty()
