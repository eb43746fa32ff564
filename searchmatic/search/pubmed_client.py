"""PubMed E-utilities client: query building, esearch/efetch and XML parsing."""

import logging
import re
import threading
import time
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Any, Optional

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import PubMedError, ValidationError
from ..storage.models import PubMedArticle, SearchFilters, SearchResult

logger = logging.getLogger(__name__)

EUTILS_BASE_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
PUBMED_ARTICLE_URL = "https://pubmed.ncbi.nlm.nih.gov/{pmid}/"

MAX_RETMAX = 10000
FETCH_CHUNK_SIZE = 200
RETRYABLE_STATUS = {429, 500, 502, 503, 504}

STUDY_TYPE_TERMS = {
    "randomized_controlled_trial": '"Randomized Controlled Trial"[Publication Type]',
    "systematic_review": '"Systematic Review"[Publication Type]',
    "meta_analysis": '"Meta-Analysis"[Publication Type]',
    "clinical_trial": '"Clinical Trial"[Publication Type]',
    "case_control": '"Case-Control Studies"[MeSH Terms]',
    "cohort": '"Cohort Studies"[MeSH Terms]',
    "cross_sectional": '"Cross-Sectional Studies"[MeSH Terms]',
    "case_report": '"Case Reports"[Publication Type]',
}

SORT_VALUES = {
    "relevance": "relevance",
    "date": "pub_date",
    "first_author": "Author",
    "last_author": "Last Author",
    "journal": "JournalName",
    "title": "Title",
}

MONTHS = {
    name: index
    for index, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}


class _RetryableResponse(Exception):
    """HTTP status worth retrying (rate limited or server error)."""


def _or_group(terms: list[str]) -> str:
    return f"({' OR '.join(terms)})"


def build_search_query(filters: SearchFilters) -> str:
    """
    Translate search filters into a PubMed query string.

    Raises:
        ValidationError: If the filters produce an empty query
    """
    parts = []

    if filters.query and filters.query.strip():
        parts.append(f"({filters.query.strip()})")

    for term in (filters.population, filters.intervention, filters.comparison, filters.outcome):
        if term and term.strip():
            term = term.strip()
            parts.append(f"({term}[MeSH Terms] OR {term}[All Fields])")

    if filters.start_year or filters.end_year:
        start = filters.start_year or "1900"
        end = filters.end_year or str(datetime.now().year)
        parts.append(f'("{start}"[Date - Publication] : "{end}"[Date - Publication])')

    if filters.publication_types:
        parts.append(_or_group([f'"{t}"[Publication Type]' for t in filters.publication_types]))

    if filters.study_types:
        parts.append(_or_group([
            STUDY_TYPE_TERMS.get(t, f'"{t}"[All Fields]') for t in filters.study_types
        ]))

    if filters.languages:
        parts.append(_or_group([f'"{lang}"[Language]' for lang in filters.languages]))

    if filters.journals:
        parts.append(_or_group([f'"{j}"[Journal]' for j in filters.journals]))

    if filters.has_abstract:
        parts.append("hasabstract[text]")

    if filters.is_free_full_text:
        parts.append("free full text[sb]")

    if not parts:
        raise ValidationError("Enter a search query or at least one filter")

    return " AND ".join(parts)


# =============================================================================
# XML PARSING
# =============================================================================

def _text(node: Optional[ET.Element]) -> str:
    if node is None:
        return ""
    return "".join(node.itertext()).strip()


def _month_number(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        month = int(value)
        return month if 1 <= month <= 12 else None
    return MONTHS.get(value[:3].lower())


def _parse_pub_date(article: ET.Element) -> tuple[Optional[str], Optional[int]]:
    """(YYYY[-MM[-DD]], year) from the journal issue date."""
    pub_date = article.find(".//JournalIssue/PubDate")
    if pub_date is None:
        return None, None

    year_text = pub_date.findtext("Year")
    month = _month_number(pub_date.findtext("Month"))
    day_text = pub_date.findtext("Day")

    if not year_text:
        medline = pub_date.findtext("MedlineDate") or ""
        match = re.search(r"(\d{4})(?:\s+([A-Za-z]{3}))?", medline)
        if not match:
            return None, None
        year_text = match.group(1)
        month = _month_number(match.group(2))
        day_text = None

    year = int(year_text)
    if month is None:
        return f"{year:04d}", year
    if day_text and day_text.isdigit():
        return f"{year:04d}-{month:02d}-{int(day_text):02d}", year
    return f"{year:04d}-{month:02d}", year


def _parse_authors(article: ET.Element) -> list[str]:
    authors = []
    for author in article.findall(".//AuthorList/Author"):
        collective = author.findtext("CollectiveName")
        if collective:
            authors.append(collective.strip())
            continue
        last_name = author.findtext("LastName")
        initials = author.findtext("Initials") or author.findtext("ForeName")
        if last_name:
            authors.append(f"{last_name} {initials}".strip() if initials else last_name)
    return authors


def _parse_abstract(article: ET.Element) -> Optional[str]:
    sections = []
    for node in article.findall(".//Abstract/AbstractText"):
        text = _text(node)
        if not text:
            continue
        label = node.attrib.get("Label")
        sections.append(f"{label}: {text}" if label else text)
    return "\n".join(sections) or None


def _parse_doi(article: ET.Element) -> Optional[str]:
    for node in article.findall(".//PubmedData/ArticleIdList/ArticleId"):
        if node.attrib.get("IdType", "").lower() == "doi" and node.text:
            return node.text.strip()
    for node in article.findall(".//ELocationID"):
        if node.attrib.get("EIdType", "").lower() == "doi" and node.text:
            return node.text.strip()
    return None


def _parse_pmc_id(article: ET.Element) -> Optional[str]:
    for node in article.findall(".//PubmedData/ArticleIdList/ArticleId"):
        if node.attrib.get("IdType", "").lower() == "pmc" and node.text:
            return node.text.strip()
    return None


def parse_articles(xml_text: str) -> list[PubMedArticle]:
    """
    Parse an efetch PubmedArticleSet into PubMedArticle models.

    Raises:
        PubMedError: If the XML is malformed
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise PubMedError(f"Could not parse PubMed response: {e}") from e

    articles = []
    for node in root.findall(".//PubmedArticle"):
        pmid = (node.findtext(".//MedlineCitation/PMID") or "").strip()
        if not pmid:
            continue
        publication_date, publication_year = _parse_pub_date(node)
        articles.append(PubMedArticle(
            pmid=pmid,
            title=_text(node.find(".//ArticleTitle")),
            authors=_parse_authors(node),
            abstract=_parse_abstract(node),
            journal=(node.findtext(".//Journal/Title") or "").strip() or None,
            journal_abbrev=(node.findtext(".//Journal/ISOAbbreviation") or "").strip() or None,
            publication_date=publication_date,
            publication_year=publication_year,
            doi=_parse_doi(node),
            pmc_id=_parse_pmc_id(node),
            keywords=[_text(k) for k in node.findall(".//KeywordList/Keyword") if _text(k)],
            mesh_terms=[_text(m) for m in node.findall(".//MeshHeadingList/MeshHeading/DescriptorName") if _text(m)],
            publication_types=[
                _text(p) for p in node.findall(".//PublicationTypeList/PublicationType") if _text(p)
            ],
            language=node.findtext(".//Article/Language"),
            url=PUBMED_ARTICLE_URL.format(pmid=pmid),
        ))
    return articles


# =============================================================================
# CLIENT
# =============================================================================

class PubMedClient:
    """Rate-limited client for NCBI E-utilities."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        email: Optional[str] = None,
        tool: str = "searchmatic",
        base_url: str = EUTILS_BASE_URL,
        rate_limit_delay: float = 0.334,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
        max_attempts: int = 3,
        backoff: float = 1.0,
    ):
        """
        Initialize PubMed client.

        Args:
            api_key: NCBI API key (raises the rate limit to 10 requests/second)
            email: Contact email sent with each request
            tool: Tool name sent with each request
            base_url: E-utilities base URL
            rate_limit_delay: Minimum seconds between requests
            timeout: Request timeout in seconds
            session: requests session to reuse
            max_attempts: Attempts per request before giving up
            backoff: Exponential backoff multiplier in seconds
        """
        self.api_key = api_key
        self.email = email
        self.tool = tool
        self.base_url = base_url.rstrip("/")
        self.rate_limit_delay = rate_limit_delay
        self.timeout = timeout
        self.session = session or requests.Session()
        self.max_attempts = max_attempts
        self.backoff = backoff

        self._lock = threading.Lock()
        self._last_request = 0.0

    @classmethod
    def from_settings(cls, settings) -> "PubMedClient":
        return cls(
            api_key=settings.pubmed.api_key,
            email=settings.pubmed.email,
            tool=settings.pubmed.tool,
            rate_limit_delay=settings.pubmed.rate_limit_delay,
            timeout=settings.pubmed.timeout,
        )

    def _wait_for_slot(self) -> None:
        with self._lock:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.rate_limit_delay:
                time.sleep(self.rate_limit_delay - elapsed)
            self._last_request = time.monotonic()

    def _params(self, extra: dict[str, Any]) -> dict[str, Any]:
        params = {"db": "pubmed", "tool": self.tool, **extra}
        if self.email:
            params["email"] = self.email
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    def _send(self, endpoint: str, params: dict[str, Any]) -> requests.Response:
        self._wait_for_slot()
        response = self.session.get(f"{self.base_url}/{endpoint}", params=params, timeout=self.timeout)
        if response.status_code in RETRYABLE_STATUS:
            raise _RetryableResponse(f"{endpoint} returned HTTP {response.status_code}")
        response.raise_for_status()
        return response

    def _request(self, endpoint: str, params: dict[str, Any]) -> requests.Response:
        """GET an E-utilities endpoint with retries on transient failures."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=10),
            retry=retry_if_exception_type((_RetryableResponse, requests.ConnectionError, requests.Timeout)),
            reraise=True,
        )
        try:
            return retrying(self._send, endpoint, self._params(params))
        except (_RetryableResponse, requests.RequestException) as e:
            logger.error(f"PubMed {endpoint} failed: {e}")
            raise PubMedError(f"PubMed request failed: {e}") from e

    def search_ids(self, filters: SearchFilters) -> tuple[list[str], int]:
        """Run esearch; returns (PMIDs, total match count)."""
        query = build_search_query(filters)
        response = self._request("esearch.fcgi", {
            "term": query,
            "retmode": "json",
            "retmax": min(filters.max_results, MAX_RETMAX),
            "retstart": filters.offset,
            "sort": SORT_VALUES[filters.sort_by],
        })
        try:
            result = response.json()["esearchresult"]
        except (ValueError, KeyError) as e:
            raise PubMedError("Unexpected esearch response") from e
        return list(result.get("idlist", [])), int(result.get("count", 0))

    def fetch_articles(self, pmids: list[str]) -> list[PubMedArticle]:
        """efetch full records, FETCH_CHUNK_SIZE IDs per request."""
        articles = []
        for start in range(0, len(pmids), FETCH_CHUNK_SIZE):
            chunk = pmids[start:start + FETCH_CHUNK_SIZE]
            response = self._request("efetch.fcgi", {
                "id": ",".join(chunk),
                "retmode": "xml",
                "rettype": "abstract",
            })
            articles.extend(parse_articles(response.text))
        return articles

    def get_article_by_id(self, pmid: str) -> Optional[PubMedArticle]:
        """Fetch one article by PMID, or None when PubMed has no such record."""
        pmid = (pmid or "").strip()
        if not pmid:
            return None
        articles = self.fetch_articles([pmid])
        return articles[0] if articles else None

    def get_related_articles(self, pmid: str, max_results: int = 20) -> list[PubMedArticle]:
        """
        Articles PubMed lists as similar to pmid (elink pubmed_pubmed).

        The source article is never part of the result.
        """
        response = self._request("elink.fcgi", {
            "dbfrom": "pubmed",
            "id": pmid,
            "linkname": "pubmed_pubmed",
            "cmd": "neighbor",
            "retmode": "json",
        })
        try:
            linksets = response.json()["linksets"]
        except (ValueError, KeyError) as e:
            raise PubMedError("Unexpected elink response") from e

        related = []
        for linkset in linksets:
            for linkset_db in linkset.get("linksetdbs", []):
                if linkset_db.get("linkname") != "pubmed_pubmed":
                    continue
                related.extend(str(link) for link in linkset_db.get("links", []))

        related = [link for link in dict.fromkeys(related) if link != str(pmid)][:max_results]
        if not related:
            return []
        return self.fetch_articles(related)

    def search_articles(self, filters: SearchFilters) -> SearchResult:
        """Search and fetch one page of articles."""
        query = build_search_query(filters)
        ids, total = self.search_ids(filters)
        if not ids:
            return SearchResult(query=query, total_count=total)

        articles = self.fetch_articles(ids)
        has_more = filters.offset + len(ids) < total
        logger.info(f"PubMed search returned {len(articles)} of {total} articles")
        return SearchResult(
            articles=articles,
            total_count=total,
            query=query,
            has_more=has_more,
            next_offset=filters.offset + len(ids) if has_more else None,
        )

    def validate_query(self, filters: SearchFilters) -> dict[str, Any]:
        """
        Count matches without fetching articles.

        Never raises: a query PubMed rejects, or one that cannot be built,
        comes back with is_valid False and a suggestion.
        """
        try:
            _, count = self.search_ids(filters.model_copy(update={"max_results": 1, "offset": 0}))
        except (PubMedError, ValidationError) as e:
            logger.warning(f"Query validation failed: {e}")
            return {
                "is_valid": False,
                "estimated_results": 0,
                "suggestion": "Query validation failed - please check your search terms",
            }
        return {
            "is_valid": count > 0,
            "estimated_results": count,
            "suggestion": "Try broader search terms or check spelling" if count == 0 else None,
        }
