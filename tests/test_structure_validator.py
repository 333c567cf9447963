from drafter.validators import StructureValidator


def test_duplicate_h2_and_shared_h3_are_flagged():
    markdown = "\n".join(
        [
            "## 料金",
            "### 注意点",
            "## 機能",
            "### 注意点",
            "## 料金",
        ]
    )

    warnings = StructureValidator.validate_headings(markdown)

    assert any("H2が重複" in warning and "料金" in warning for warning in warnings)
    assert any("H3「注意点」" in warning for warning in warnings)


def test_placeholder_residue_is_reported():
    warnings = StructureValidator.check_placeholder_residue("ツールBは安価です。〇〇を確認します。")

    assert len(warnings) == 2


def test_closing_section_detection():
    assert StructureValidator.has_closing_section("## 導入\n本文\n## まとめ\n結論")
    assert StructureValidator.has_closing_section("## Summary\ntext")
    assert not StructureValidator.has_closing_section("## 導入\n### まとめ")


def test_plain_form_only_checked_for_polite_tone():
    text = "この方法が最も効率的である。"

    assert StructureValidator.check_style_consistency(text, "丁寧")
    assert StructureValidator.check_style_consistency(text, "カジュアル") == []


def test_validate_combines_checks():
    warnings = StructureValidator.validate("## 導入\n\n導入の本文です。", tone="丁寧")

    assert warnings == ["まとめセクションがありません"]
