# models/site_models.py

from __future__ import annotations

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _Frozen(BaseModel):
    # 1回の取得で1度だけ組み立て、以降は読み取り専用
    model_config = ConfigDict(frozen=True)


class Heading(_Frozen):
    """
    見出し1つ分（h1〜h6）。
    - level: 見出しレベル (1〜6)
    - text: 内側のタグを空白にした上で空白を詰めたテキスト
    """
    level: int = Field(ge=1, le=6)
    text: str


class ImageInfo(_Frozen):
    src: str
    alt: str = ""
    # HEAD で測れた場合のみ入る（不明なら None）
    size_bytes: Optional[int] = None


class ResourceInfo(_Frozen):
    """外部 JS/CSS は絶対 URL、インラインは "inline-script" / "inline-style"。"""
    url: str
    minified: bool


class PageResources(_Frozen):
    js: List[ResourceInfo] = Field(default_factory=list)
    css: List[ResourceInfo] = Field(default_factory=list)

    @property
    def all(self) -> List[ResourceInfo]:
        return [*self.js, *self.css]


class OgMetadata(_Frozen):
    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    image_width: Optional[str] = None
    image_height: Optional[str] = None


class SchemaEntry(_Frozen):
    """
    JSON-LD から拾った型1件。
    - type: 表示用の型名（配列の場合は先頭）
    - raw_type: @type の元の値（文字列 or 配列）
    - source: トップレベルの @type か @graph 内の要素か
    """
    type: str
    raw_type: Union[str, List[str]]
    source: Literal["@type", "@graph"]


class SchemaSummary(_Frozen):
    has_schema: bool = False
    types: List[str] = Field(default_factory=list)
    # パースに成功した JSON-LD ブロック数
    count: int = 0
    entries: List[SchemaEntry] = Field(default_factory=list)
    # itemtype 属性（microdata）の型。has_schema には影響しない
    microdata_types: List[str] = Field(default_factory=list)


class PageSnapshot(_Frozen):
    """
    1ページ分の抽出結果。
    チェックエンジンに渡す中間モデルで、ネットワークにも DOM にも依存しない。
    """

    url: str
    title: str = ""
    meta_description: str = ""

    # 文書順のフラットなリスト
    headings: List[Heading] = Field(default_factory=list)
    paragraphs: List[str] = Field(default_factory=list)
    images: List[ImageInfo] = Field(default_factory=list)

    internal_links: List[str] = Field(default_factory=list)
    outbound_links: List[str] = Field(default_factory=list)

    resources: PageResources = Field(default_factory=PageResources)
    og_metadata: OgMetadata = Field(default_factory=OgMetadata)
    schema_summary: SchemaSummary = Field(default_factory=SchemaSummary, alias="schema")

    # script/style/noscript を除いた本文テキスト（語数・密度の計算用）
    content: str = ""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def headings_at(self, level: int) -> List[Heading]:
        return [h for h in self.headings if h.level == level]
