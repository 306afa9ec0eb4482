# agents/analyzer_agent.py

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlsplit

from agents.recommendation_agent import RecommendationGenerator, fallback_recommendation
from app.config import Settings, get_settings
from models.analysis_models import ExternalPageData, SEOCheck
from models.site_models import PageSnapshot

logger = logging.getLogger(__name__)

# ============================================================
# チェックカタログ
# ============================================================

# この順番で必ず 18 件を評価する
CHECK_TITLES: Tuple[str, ...] = (
    "Keyphrase in Title",
    "Keyphrase in Meta Description",
    "Keyphrase in URL",
    "Content Length",
    "Keyphrase Density",
    "Keyphrase in Introduction",
    "Image Alt Attributes",
    "Internal Links",
    "Outbound Links",
    "Next-Gen Image Formats",
    "OG Image",
    "OG Title and Description",
    "Keyphrase in H1 Heading",
    "Keyphrase in H2 Headings",
    "Heading Hierarchy",
    "Code Minification",
    "Schema Markup",
    "Image File Size",
)

CHECK_PRIORITIES: Dict[str, str] = {
    "Keyphrase in Title": "high",
    "Keyphrase in Meta Description": "high",
    "Keyphrase in URL": "medium",
    "Content Length": "high",
    "Keyphrase Density": "medium",
    "Keyphrase in Introduction": "medium",
    "Image Alt Attributes": "low",
    "Internal Links": "medium",
    "Outbound Links": "low",
    "Next-Gen Image Formats": "low",
    "OG Image": "medium",
    "OG Title and Description": "medium",
    "Keyphrase in H1 Heading": "high",
    "Keyphrase in H2 Headings": "medium",
    "Heading Hierarchy": "high",
    "Code Minification": "low",
    "Schema Markup": "medium",
    "Image File Size": "medium",
}

SUCCESS_MESSAGES: Dict[str, str] = {
    "Keyphrase in Title": "Great job! Your title includes the target keyphrase.",
    "Keyphrase in Meta Description": "Perfect! Your meta description effectively uses the keyphrase.",
    "Keyphrase in URL": "Excellent! Your URL is SEO-friendly with the keyphrase.",
    "Content Length": "Well done! Your content length is good for SEO.",
    "Keyphrase Density": "Perfect! Your keyphrase density is within the optimal range.",
    "Keyphrase in Introduction": "Excellent! You've included the keyphrase in your introduction.",
    "Image Alt Attributes": "Well done! Your images are properly optimized with descriptive alt text.",
    "Internal Links": "Perfect! You have a good number of internal links.",
    "Outbound Links": "Excellent! You've included relevant outbound links.",
    "Next-Gen Image Formats": "Excellent! Your images use modern, optimized formats.",
    "OG Image": "Great job! Your page has a properly configured Open Graph image.",
    "OG Title and Description": "Perfect! Open Graph title and description are well configured.",
    "Keyphrase in H1 Heading": "Excellent! Your main H1 heading effectively includes the keyphrase.",
    "Keyphrase in H2 Headings": "Great job! Your H2 subheadings include the keyphrase, reinforcing your topic focus.",
    "Heading Hierarchy": "Great job! Your page has a proper heading tag hierarchy.",
    "Code Minification": "Excellent! Your JavaScript and CSS files are properly minified for better performance.",
    "Schema Markup": (
        "Great job! Your page has schema markup implemented, "
        "making it easier for search engines to understand your content."
    ),
    "Image File Size": "Great job! All your images are well-optimized, keeping your page loading times fast.",
}

HOMEPAGE_URL_MESSAGE = "All good here, since it's the homepage!"

# 失敗時に LLM でレコメンドを作るチェック（それ以外は固定テンプレート）
DYNAMIC_RECOMMENDATION_CHECKS = frozenset(
    {
        "Keyphrase in Title",
        "Keyphrase in Meta Description",
        "Keyphrase in Introduction",
        "Keyphrase in H1 Heading",
    }
)

# ---------- しきい値 ----------

MIN_WORD_COUNT = 300
MIN_DENSITY = 0.5
MAX_DENSITY = 2.5
MIN_MINIFIED_RATIO = 0.4
NEXT_GEN_EXTENSIONS = (".webp", ".avif")
IMAGE_COMPRESSION_TOOLS = "TinyPNG, Squoosh, or ImageOptim"

MAX_SECONDARY_KEYWORDS = 10
MAX_SECONDARY_KEYWORD_LENGTH = 100

_WORD_RE = re.compile(r"\w+(?:['’\-]\w+)*")


class Recommender(Protocol):
    def recommend(
        self,
        check_title: str,
        keyphrase: str,
        context: Optional[str] = None,
        extra_context: Optional[str] = None,
    ) -> str:
        ...


@dataclass
class _Outcome:
    """1チェック分の判定。passed=False の場合 description は必須。"""
    passed: bool
    description: str = ""
    recommendation: Optional[str] = None
    # LLM レコメンドに渡す現在値
    context: Optional[str] = None
    extra_context: Optional[str] = None


# ============================================================
# テキスト判定ユーティリティ
# ============================================================

def _contains(text: Optional[str], keyphrase: str) -> bool:
    """大文字小文字だけを無視した部分一致。"""
    if not text:
        return False
    return keyphrase.lower() in text.lower()


def _contains_any(text: Optional[str], keywords: List[str]) -> bool:
    return any(_contains(text, k) for k in keywords)


def _keyphrase_label(keywords: List[str]) -> str:
    label = f'the keyphrase "{keywords[0]}"'
    if len(keywords) > 1:
        label += " or any secondary keywords"
    return label


def parse_secondary_keywords(raw: Optional[str]) -> List[str]:
    """
    カンマ区切りの二次キーワードを分解する。
    空要素と 100 文字を超える要素は捨て、先頭 10 件までを使う。
    """
    if not raw:
        return []
    keywords = [k.strip() for k in raw.split(",")]
    keywords = [k for k in keywords if k and len(k) <= MAX_SECONDARY_KEYWORD_LENGTH]
    return keywords[:MAX_SECONDARY_KEYWORDS]


def _keyword_list(keyphrase: str, secondary_keywords: Optional[str]) -> List[str]:
    """先頭が主キーフレーズ。大文字小文字違いの重複は除く。"""
    keywords = [keyphrase]
    seen = {keyphrase.lower()}
    for keyword in parse_secondary_keywords(secondary_keywords):
        if keyword.lower() not in seen:
            seen.add(keyword.lower())
            keywords.append(keyword)
    return keywords


def _words(text: str) -> List[str]:
    return _WORD_RE.findall(text.lower())


def count_words(text: str) -> int:
    return len(_words(text or ""))


def _matches_heading(text: str, keyphrase: str) -> bool:
    """
    見出しにキーフレーズが含まれるか。
    完全一致が無ければ、3文字以上の単語がすべて見出し中に出てくるかで判定する。
    """
    if _contains(text, keyphrase):
        return True
    significant = [w for w in _words(keyphrase) if len(w) > 2]
    if not significant:
        return False
    heading_words = set(_words(text))
    return all(w in heading_words for w in significant)


def _phrase_pattern(keyphrase: str) -> "re.Pattern[str]":
    # 語の間の空白は何文字でも一致させる
    body = r"\s+".join(re.escape(part) for part in keyphrase.lower().split())
    return re.compile(r"(?<!\w)" + body + r"(?!\w)")


def combined_keyphrase_density(text: str, keywords: List[str]) -> float:
    """
    複数キーワードの合算密度（%）。
    各キーワードの 出現回数 × 語数 を合計し、全語数で割って 100 倍する。
    """
    total = count_words(text)
    if total == 0:
        return 0.0
    lowered = text.lower()
    matched_words = 0
    for keyword in keywords:
        phrase_words = _words(keyword)
        if not phrase_words:
            continue
        matched_words += len(_phrase_pattern(keyword).findall(lowered)) * len(phrase_words)
    return matched_words / total * 100


def keyphrase_density(text: str, keyphrase: str) -> float:
    """
    キーフレーズ密度（%）。
    出現回数 × キーフレーズの語数 ÷ 全語数 × 100。本文が空なら 0。
    """
    return combined_keyphrase_density(text, [keyphrase])


def _slugify(keyphrase: str) -> str:
    return "-".join(keyphrase.lower().split())


def _last_path_segment(url: str) -> str:
    path = urlsplit(url).path.rstrip("/")
    return path.rsplit("/", 1)[-1].lower()


def _image_file_name(src: str) -> str:
    path = src.split("?", 1)[0].split("#", 1)[0]
    return path.rsplit("/", 1)[-1].lower()


# ============================================================
# 各チェック
# ============================================================

def _check_title(title: str, keywords: List[str]) -> _Outcome:
    if _contains_any(title, keywords):
        return _Outcome(True)
    description = (
        f'The title "{title}" does not contain {_keyphrase_label(keywords)}.'
        if title
        else "The page has no title."
    )
    return _Outcome(False, description, context=title or None)


def _check_meta_description(description_text: str, keywords: List[str], title: str) -> _Outcome:
    if _contains_any(description_text, keywords):
        return _Outcome(True)
    description = (
        f"The meta description does not contain {_keyphrase_label(keywords)}."
        if description_text
        else "The page has no meta description."
    )
    return _Outcome(False, description, context=description_text or None, extra_context=title or None)


def _check_url(url: str, keywords: List[str], is_home_page: bool) -> _Outcome:
    if is_home_page:
        return _Outcome(True, HOMEPAGE_URL_MESSAGE)
    segment = _last_path_segment(url)
    if any(s and s in segment for s in (_slugify(k) for k in keywords)):
        return _Outcome(True)
    slug = _slugify(keywords[0])
    return _Outcome(
        False,
        f'The URL slug "{segment or "/"}" does not contain the keyphrase "{slug}".',
        recommendation=f'Change the page slug to include the keyphrase, for example "/{slug}".',
    )


def _check_content_length(word_count: int, keyphrase: str) -> _Outcome:
    if word_count >= MIN_WORD_COUNT:
        return _Outcome(True)
    return _Outcome(
        False,
        f"The page has {word_count} words. At least {MIN_WORD_COUNT} words are recommended.",
        recommendation=(
            f"Expand your content to at least {MIN_WORD_COUNT} words and cover '{keyphrase}' "
            "in more depth with examples, FAQs, or supporting sections."
        ),
    )


def _check_density(content: str, keywords: List[str]) -> _Outcome:
    keyphrase = keywords[0]
    density = combined_keyphrase_density(content, keywords)
    if MIN_DENSITY <= density <= MAX_DENSITY:
        return _Outcome(True)
    if density < MIN_DENSITY:
        return _Outcome(
            False,
            f"Keyphrase density is {density:.1f}%, below the recommended {MIN_DENSITY}% to {MAX_DENSITY}%.",
            recommendation=f"Use '{keyphrase}' a few more times throughout your content in a natural way.",
        )
    return _Outcome(
        False,
        f"Keyphrase density is {density:.1f}%, above the recommended {MIN_DENSITY}% to {MAX_DENSITY}%.",
        recommendation=(
            f"Reduce how often '{keyphrase}' appears and use synonyms or related terms "
            "to avoid keyword stuffing."
        ),
    )


def _check_introduction(paragraphs: List[str], keywords: List[str], title: str) -> _Outcome:
    first = paragraphs[0] if paragraphs else ""
    if _contains_any(first, keywords):
        return _Outcome(True)
    description = (
        f"The first paragraph does not mention {_keyphrase_label(keywords)}."
        if first
        else "No introduction paragraph was found on the page."
    )
    return _Outcome(False, description, context=first or None, extra_context=title or None)


def _check_image_alt(snapshot: PageSnapshot, keyphrase: str) -> _Outcome:
    missing = [img for img in snapshot.images if not img.alt.strip()]
    if not missing:
        return _Outcome(True)
    return _Outcome(
        False,
        f"{len(missing)} of {len(snapshot.images)} images are missing alt text.",
        recommendation=(
            f"Add descriptive alt text containing '{keyphrase}' where relevant to every image. "
            "Describe what the image shows in a natural way."
        ),
    )


def _check_internal_links(snapshot: PageSnapshot) -> _Outcome:
    if snapshot.internal_links:
        return _Outcome(True)
    return _Outcome(
        False,
        "The page does not link to any other page on the same site.",
        recommendation=(
            "Add links to other relevant pages on your site to help visitors "
            "and search engines discover related content."
        ),
    )


def _check_outbound_links(snapshot: PageSnapshot, keyphrase: str) -> _Outcome:
    if snapshot.outbound_links:
        return _Outcome(True)
    return _Outcome(
        False,
        "The page does not link to any external source.",
        recommendation=f"Link to reputable external sources that support your content about '{keyphrase}'.",
    )


def _check_next_gen_formats(snapshot: PageSnapshot) -> _Outcome:
    legacy = [
        img.src for img in snapshot.images
        if not _image_file_name(img.src).endswith(NEXT_GEN_EXTENSIONS)
    ]
    if not legacy:
        return _Outcome(True)
    return _Outcome(
        False,
        f"{len(legacy)} of {len(snapshot.images)} images do not use WebP or AVIF.",
        recommendation=(
            f"Convert {len(legacy)} image(s) to WebP or AVIF to reduce file size "
            "without a visible loss of quality."
        ),
    )


def _check_og_image(og_image: Optional[str]) -> _Outcome:
    if og_image:
        return _Outcome(True)
    return _Outcome(
        False,
        "The page has no Open Graph image.",
        recommendation=(
            "Add an og:image meta tag pointing to an image of at least 1200x630 pixels "
            "so the page looks good when shared on social media."
        ),
    )


def _check_og_title_description(
    og_title: Optional[str],
    og_description: Optional[str],
    page_data: Optional[ExternalPageData],
    keyphrase: str,
) -> _Outcome:
    if page_data and page_data.uses_title_as_og_title and page_data.uses_description_as_og_description:
        return _Outcome(True)
    if og_title and og_description:
        return _Outcome(True)

    missing = [name for name, value in (("og:title", og_title), ("og:description", og_description)) if not value]
    return _Outcome(
        False,
        f"Open Graph title and/or description need optimization (missing: {', '.join(missing)}).",
        recommendation=(
            f"Add og:title and og:description meta tags that mention '{keyphrase}' "
            "and summarize the page for social sharing."
        ),
    )


def _check_h1(snapshot: PageSnapshot, keywords: List[str]) -> _Outcome:
    h1s = snapshot.headings_at(1)
    context = " | ".join(h.text for h in h1s) or None

    if not h1s:
        return _Outcome(False, "The page has no H1 heading.", context=context, extra_context=snapshot.title or None)
    if len(h1s) > 1:
        return _Outcome(
            False,
            f"The page has {len(h1s)} H1 headings. Use exactly one H1 that contains the keyphrase.",
            context=context,
            extra_context=snapshot.title or None,
        )
    if any(_matches_heading(h1s[0].text, k) for k in keywords):
        return _Outcome(True)
    return _Outcome(
        False,
        f'The H1 heading "{h1s[0].text}" does not contain {_keyphrase_label(keywords)}.',
        context=context,
        extra_context=snapshot.title or None,
    )


def _check_h2(snapshot: PageSnapshot, keywords: List[str]) -> _Outcome:
    keyphrase = keywords[0]
    h2s = snapshot.headings_at(2)
    if not h2s:
        return _Outcome(True, "No H2 subheadings found, so there is nothing to check here.")
    if any(_matches_heading(h.text, k) for h in h2s for k in keywords):
        return _Outcome(True)
    return _Outcome(
        False,
        f"None of the {len(h2s)} H2 subheadings contain {_keyphrase_label(keywords)}.",
        recommendation=f"Use '{keyphrase}' in at least one H2 subheading to reinforce the topic of the page.",
    )


def heading_hierarchy_issues(snapshot: PageSnapshot) -> List[str]:
    """見出し構造の問題点を文書順に列挙する。空なら合格。"""
    headings = snapshot.headings
    if not headings:
        return ["No headings were found on the page."]

    issues: List[str] = []
    if headings[0].level != 1:
        issues.append(f"The first heading is an H{headings[0].level} instead of an H1.")

    h1_count = len(snapshot.headings_at(1))
    if h1_count == 0:
        issues.append("The page has no H1 heading.")
    elif h1_count > 1:
        issues.append(f"The page has {h1_count} H1 headings instead of exactly one.")

    if not snapshot.headings_at(2):
        issues.append("The page has no H2 subheadings.")

    for previous, current in zip(headings, headings[1:]):
        if current.level > previous.level + 1:
            issues.append(f"Heading level skipped: H{previous.level} is followed by H{current.level}.")
    return issues


def _check_heading_hierarchy(snapshot: PageSnapshot) -> _Outcome:
    issues = heading_hierarchy_issues(snapshot)
    if not issues:
        return _Outcome(True)
    return _Outcome(
        False,
        " ".join(issues),
        recommendation=(
            "Start the page with a single H1, use H2 subheadings for main sections "
            "and H3-H6 for nested sections without skipping levels."
        ),
    )


def _check_minification(snapshot: PageSnapshot) -> _Outcome:
    resources = snapshot.resources.all
    if not resources:
        return _Outcome(True, "No JavaScript or CSS resources found, so there is nothing to minify.")

    minified = sum(1 for r in resources if r.minified)
    ratio = minified / len(resources)
    if ratio >= MIN_MINIFIED_RATIO:
        return _Outcome(True)

    offenders = [r.url for r in resources if not r.minified][:5]
    return _Outcome(
        False,
        f"Only {minified} of {len(resources)} JavaScript and CSS resources ({ratio:.0%}) are minified.",
        recommendation=(
            "Minify your JavaScript and CSS files to reduce page weight. "
            f"Not minified: {', '.join(offenders)}."
        ),
    )


# ---------- Schema のおすすめ ----------

_SCHEMA_INDICATORS: List[Tuple[str, Tuple[str, ...]]] = [
    ("Product Schema", ("price", "add to cart", "buy now", "in stock", "shop")),
    ("Article Schema", ("blog", "article", "posted on", "published", "author")),
    ("FAQPage Schema", ("faq", "frequently asked", "questions")),
    ("LocalBusiness Schema", ("opening hours", "visit us", "our location", "directions")),
]


def schema_recommendation(snapshot: PageSnapshot, is_home_page: bool) -> str:
    """ページの種類をざっくり推定し、追加すべき構造化データを提案する。"""
    if is_home_page:
        suggestions = ["Organization or WebSite Schema"]
    else:
        text = f"{snapshot.title} {snapshot.content}".lower()
        suggestions = [name for name, words in _SCHEMA_INDICATORS if any(w in text for w in words)]
        if not suggestions:
            suggestions = ["WebPage Schema"]

    return (
        f"Add {', '.join(suggestions)} markup using JSON-LD in the page head. "
        "Test implementations with Google's Rich Results Test tool."
    )


def _check_schema(snapshot: PageSnapshot, is_home_page: bool) -> _Outcome:
    if snapshot.schema_summary.has_schema:
        return _Outcome(True)
    description = "No schema markup (JSON-LD structured data) was found on the page."
    if snapshot.schema_summary.microdata_types:
        description += " Microdata was found but JSON-LD is preferred."
    return _Outcome(False, description, recommendation=schema_recommendation(snapshot, is_home_page))


def _check_image_sizes(snapshot: PageSnapshot, max_bytes: int) -> _Outcome:
    large = [
        img for img in snapshot.images
        if img.size_bytes is not None and img.size_bytes > max_bytes
    ]
    if not large:
        return _Outcome(True)

    listed = ", ".join(f"{_image_file_name(img.src)} ({img.size_bytes // 1024} KB)" for img in large[:5])
    return _Outcome(
        False,
        f"{len(large)} image(s) are larger than {max_bytes // 1024} KB.",
        recommendation=(
            f"Compress these images: {listed}. "
            f"Tools like {IMAGE_COMPRESSION_TOOLS} can shrink them without visible quality loss."
        ),
    )


# ============================================================
# メインロジック
# ============================================================

def evaluate_checks(
    snapshot: PageSnapshot,
    keyphrase: str,
    is_home_page: bool = False,
    page_data: Optional[ExternalPageData] = None,
    *,
    recommender: Optional[Recommender] = None,
    settings: Optional[Settings] = None,
    secondary_keywords: Optional[str] = None,
) -> List[SEOCheck]:
    """
    PageSnapshot を 18 個のチェックで評価し、カタログ順の SEOCheck リストを返す。

    - page_data の title / meta_description / OG 項目は抽出値より優先
    - secondary_keywords（カンマ区切り）は Title / Meta / URL / Density /
      Introduction / H1 / H2 で主キーフレーズの代わりとして一致を認める
    - 失敗した Title / Meta Description / Introduction / H1 は LLM レコメンド（並列）
    - それ以外の失敗は固定テンプレート、合格はチェックごとの成功メッセージ
    """
    settings = settings or get_settings()
    if recommender is None:
        recommender = RecommendationGenerator(settings=settings)

    title = (page_data.title if page_data and page_data.title else None) or snapshot.title
    meta_description = (
        page_data.meta_description if page_data and page_data.meta_description else None
    ) or snapshot.meta_description
    og_title = (page_data.og_title if page_data and page_data.og_title else None) or snapshot.og_metadata.title
    og_description = (
        page_data.og_description if page_data and page_data.og_description else None
    ) or snapshot.og_metadata.description
    og_image = (page_data.og_image if page_data and page_data.og_image else None) or snapshot.og_metadata.image

    keywords = _keyword_list(keyphrase, secondary_keywords)

    evaluators: Dict[str, Callable[[], _Outcome]] = {
        "Keyphrase in Title": lambda: _check_title(title, keywords),
        "Keyphrase in Meta Description": lambda: _check_meta_description(meta_description, keywords, title),
        "Keyphrase in URL": lambda: _check_url(snapshot.url, keywords, is_home_page),
        "Content Length": lambda: _check_content_length(count_words(snapshot.content), keyphrase),
        "Keyphrase Density": lambda: _check_density(snapshot.content, keywords),
        "Keyphrase in Introduction": lambda: _check_introduction(snapshot.paragraphs, keywords, title),
        "Image Alt Attributes": lambda: _check_image_alt(snapshot, keyphrase),
        "Internal Links": lambda: _check_internal_links(snapshot),
        "Outbound Links": lambda: _check_outbound_links(snapshot, keyphrase),
        "Next-Gen Image Formats": lambda: _check_next_gen_formats(snapshot),
        "OG Image": lambda: _check_og_image(og_image),
        "OG Title and Description": lambda: _check_og_title_description(og_title, og_description, page_data, keyphrase),
        "Keyphrase in H1 Heading": lambda: _check_h1(snapshot, keywords),
        "Keyphrase in H2 Headings": lambda: _check_h2(snapshot, keywords),
        "Heading Hierarchy": lambda: _check_heading_hierarchy(snapshot),
        "Code Minification": lambda: _check_minification(snapshot),
        "Schema Markup": lambda: _check_schema(snapshot, is_home_page),
        "Image File Size": lambda: _check_image_sizes(snapshot, settings.max_image_bytes),
    }

    outcomes: List[Tuple[str, _Outcome]] = [(name, evaluators[name]()) for name in CHECK_TITLES]

    # ---------- 失敗した動的チェックのレコメンドを並列で取得 ----------
    dynamic = [
        (index, name, outcome)
        for index, (name, outcome) in enumerate(outcomes)
        if not outcome.passed and name in DYNAMIC_RECOMMENDATION_CHECKS
    ]
    generated: Dict[int, str] = {}
    if dynamic:
        logger.info("[analyzer] requesting dynamic recommendations count=%d", len(dynamic))
        with ThreadPoolExecutor(max_workers=len(dynamic)) as pool:
            futures = {
                index: pool.submit(recommender.recommend, name, keyphrase, outcome.context, outcome.extra_context)
                for index, name, outcome in dynamic
            }
            for index, future in futures.items():
                generated[index] = future.result()

    checks: List[SEOCheck] = []
    for index, (name, outcome) in enumerate(outcomes):
        if outcome.passed:
            checks.append(
                SEOCheck(
                    title=name,
                    description=outcome.description or SUCCESS_MESSAGES[name],
                    passed=True,
                    priority=CHECK_PRIORITIES[name],
                )
            )
            continue

        recommendation = generated.get(index) or outcome.recommendation
        if not recommendation:
            recommendation = fallback_recommendation(name, keyphrase)
        checks.append(
            SEOCheck(
                title=name,
                description=outcome.description,
                passed=False,
                priority=CHECK_PRIORITIES[name],
                recommendation=recommendation,
            )
        )

    logger.info(
        "[analyzer] evaluated url=%s keyphrase=%s passed=%d/%d",
        snapshot.url,
        keyphrase,
        sum(1 for c in checks if c.passed),
        len(checks),
    )
    return checks
