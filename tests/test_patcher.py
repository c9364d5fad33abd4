import pytest

from novel_forge.models import Patch
from novel_forge.patcher import apply_patches, check_patch

TEXT = (
    "Mara pressed her scarred left palm against the cold glass. "
    "Outside, the tide bell rang twice over the harbour. "
    "Silas Vane waited on the customs pier with his ledger. "
    "Outside, the tide bell rang twice over the harbour."
)


def test_unique_snippet_applied():
    patch = Patch(
        original="Silas Vane waited on the customs pier",
        replacement="Silas Vane paced the customs pier",
        reason="stronger verb",
    )
    result = apply_patches(TEXT, [patch])
    assert result.changed
    assert "Silas Vane paced the customs pier with his ledger." in result.text
    assert result.rejected == []


def test_ambiguous_snippet_rejected():
    patch = Patch(original="the tide bell rang twice over the harbour", replacement="the bell rang")
    result = apply_patches(TEXT, [patch])
    assert not result.changed
    assert result.text == TEXT
    assert "ambiguous" in result.rejected[0][1]


def test_absent_snippet_rejected():
    patch = Patch(original="Mara pressed her scarred right palm", replacement="x" * 30)
    result = apply_patches(TEXT, [patch])
    assert result.text == TEXT
    assert result.rejected[0][1] == "snippet not found verbatim"


def test_near_match_is_not_applied():
    patch = Patch(original="silas vane waited on the customs pier", replacement="Silas Vane paced")
    assert check_patch(TEXT, patch) == "snippet not found verbatim"


def test_short_snippet_rejected():
    patch = Patch(original="cold glass", replacement="frosted window")
    assert check_patch(TEXT, patch) == "snippet shorter than 20 characters"
    assert check_patch(TEXT, patch, min_chars=5) is None


def test_identical_replacement_rejected():
    snippet = "Silas Vane waited on the customs pier"
    assert "identical" in check_patch(TEXT, Patch(original=snippet, replacement=snippet))


def test_patches_apply_in_order_against_patched_text():
    first = Patch(
        original="Silas Vane waited on the customs pier",
        replacement="Silas Vane waited by the harbourmaster's boat",
    )
    second = Patch(
        original="Silas Vane waited on the customs pier with his ledger",
        replacement="unused",
    )
    third = Patch(
        original="by the harbourmaster's boat with his ledger",
        replacement="by the harbourmaster's boat, ledger in hand",
    )
    result = apply_patches(TEXT, [first, second, third])
    assert result.applied == [first, third]
    assert [p for p, _ in result.rejected] == [second]
    assert "by the harbourmaster's boat, ledger in hand." in result.text


@pytest.mark.parametrize("min_chars", [20, 40])
def test_min_chars_is_configurable(min_chars):
    patch = Patch(original="Mara pressed her scarred left", replacement="Mara pressed her left")
    reason = check_patch(TEXT, patch, min_chars=min_chars)
    assert (reason is None) == (len(patch.original) >= min_chars)
