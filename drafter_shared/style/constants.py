"""Catalogues used to keep template artifacts out of generated articles."""

# Names that are template artifacts rather than real entities.
PLACEHOLDER_NAME_PATTERNS = [
    r"^(?:service|company|tool|product|vendor|brand)\s*[a-z0-9]$",
    r"^(?:サービス|ツール|会社|企業|製品|商品|ブランド)\s*[a-zａ-ｚ0-9０-９]$",
    r"^x{2,}$",
    r"^[○〇◯●]{2,}",
    r"^(?:n/?a|tbd|unknown|sample|example|placeholder|none)$",
    r"^(?:未定|不明|サンプル|例|なし|該当なし)$",
]

# Literal replacements applied to the final article body.
PLACEHOLDER_REPLACEMENTS = [
    (r"(サービス|ツール|会社|企業|製品)[A-ZＡ-Ｚ](?![A-Za-z])", r"各\1"),
    (r"\b(?:Service|Tool|Company|Product) [A-Z]\b", "each option"),
    (r"[○〇◯]{2,}", "該当項目"),
    (r"\bX{3,}\b", "該当項目"),
    (r"\n?\.\.\.\(truncated\)", ""),
]

# Words stripped when deriving a search query from the title and keywords.
QUERY_NOISE_WORDS = [
    "おすすめ",
    "オススメ",
    "比較",
    "ランキング",
    "徹底",
    "厳選",
    "人気",
    "最新",
    "まとめ",
    "一覧",
    "選び方",
    "完全ガイド",
    "ガイド",
    "紹介",
    "解説",
    "best",
    "top",
    "vs",
    "comparison",
    "compare",
    "ranking",
    "review",
    "reviews",
    "guide",
]

# A query made only of these carries no subject.
QUERY_STOP_WORDS = {
    "の",
    "と",
    "や",
    "を",
    "で",
    "に",
    "は",
    "が",
    "選",
    "年",
    "版",
    "a",
    "an",
    "and",
    "for",
    "in",
    "of",
    "the",
    "to",
    "with",
}

# Third-party pages that list entities but are never an entity's official site.
AGGREGATOR_DOMAINS = [
    "wikipedia.org",
    "note.com",
    "qiita.com",
    "zenn.dev",
    "youtube.com",
    "x.com",
    "twitter.com",
    "facebook.com",
    "instagram.com",
    "linkedin.com",
    "amazon.co.jp",
    "rakuten.co.jp",
    "itreview.jp",
    "boxil.jp",
    "g2.com",
    "capterra.com",
    "prtimes.jp",
]

CLOSING_HEADING_KEYWORDS = ["まとめ", "おわりに", "結論", "summary", "conclusion"]
