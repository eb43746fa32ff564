"""Tests for the PubMed E-utilities client."""

from unittest.mock import MagicMock

import pytest
import requests

from searchmatic.errors import PubMedError, ValidationError
from searchmatic.search import PubMedClient, build_search_query, parse_articles
from searchmatic.storage import SearchFilters


EFETCH_XML = """<?xml version="1.0"?>
<PubmedArticleSet>
  <PubmedArticle>
    <MedlineCitation>
      <PMID>12345</PMID>
      <Article>
        <Journal>
          <JournalIssue>
            <PubDate><Year>2021</Year><Month>Mar</Month><Day>5</Day></PubDate>
          </JournalIssue>
          <Title>Journal of Geriatric Psychiatry</Title>
          <ISOAbbreviation>J Geriatr Psychiatry</ISOAbbreviation>
        </Journal>
        <ArticleTitle>Exercise for <i>late-life</i> depression</ArticleTitle>
        <Abstract>
          <AbstractText Label="BACKGROUND">Depression is common.</AbstractText>
          <AbstractText Label="RESULTS">Exercise helped.</AbstractText>
        </Abstract>
        <AuthorList>
          <Author><LastName>Smith</LastName><ForeName>John</ForeName><Initials>J</Initials></Author>
          <Author><CollectiveName>Exercise Trialists Group</CollectiveName></Author>
        </AuthorList>
        <Language>eng</Language>
        <PublicationTypeList>
          <PublicationType>Randomized Controlled Trial</PublicationType>
        </PublicationTypeList>
      </Article>
      <MeshHeadingList>
        <MeshHeading><DescriptorName>Depression</DescriptorName></MeshHeading>
      </MeshHeadingList>
      <KeywordList><Keyword>exercise</Keyword><Keyword>aged</Keyword></KeywordList>
    </MedlineCitation>
    <PubmedData>
      <ArticleIdList>
        <ArticleId IdType="pubmed">12345</ArticleId>
        <ArticleId IdType="doi">10.1000/exercise.2021</ArticleId>
        <ArticleId IdType="pmc">PMC999</ArticleId>
      </ArticleIdList>
    </PubmedData>
  </PubmedArticle>
  <PubmedArticle>
    <MedlineCitation>
      <PMID>67890</PMID>
      <Article>
        <Journal>
          <JournalIssue><PubDate><MedlineDate>2019 Nov-Dec</MedlineDate></PubDate></JournalIssue>
          <Title>Ageing Research</Title>
        </Journal>
        <ArticleTitle>Walking and mood</ArticleTitle>
        <ELocationID EIdType="doi">10.1000/walk</ELocationID>
      </Article>
    </MedlineCitation>
  </PubmedArticle>
</PubmedArticleSet>
"""


def _response(status=200, json_data=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = json_data
    response.text = text
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status}")
    return response


def _esearch(ids, count):
    return _response(json_data={"esearchresult": {"idlist": ids, "count": str(count)}})


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    return PubMedClient(
        api_key="ncbi-key",
        email="alice@example.com",
        rate_limit_delay=0,
        session=session,
        max_attempts=3,
        backoff=0,
    )


class TestBuildSearchQuery:
    """Tests for build_search_query."""

    def test_query_and_pico_terms(self):
        """Test that PICO terms expand to MeSH or all-fields groups."""
        query = build_search_query(SearchFilters(query="exercise", population="aged"))
        assert query == "(exercise) AND (aged[MeSH Terms] OR aged[All Fields])"

    def test_filters(self):
        """Test dates, types, languages and flags."""
        query = build_search_query(SearchFilters(
            query="depression",
            start_year="2015",
            end_year="2020",
            study_types=["randomized_controlled_trial", "pilot"],
            languages=["english"],
            has_abstract=True,
            is_free_full_text=True,
        ))
        assert '("2015"[Date - Publication] : "2020"[Date - Publication])' in query
        assert '("Randomized Controlled Trial"[Publication Type] OR "pilot"[All Fields])' in query
        assert '("english"[Language])' in query
        assert query.endswith("hasabstract[text] AND free full text[sb]")

    def test_open_start_year(self):
        query = build_search_query(SearchFilters(end_year="2010"))
        assert query == '("1900"[Date - Publication] : "2010"[Date - Publication])'

    def test_empty(self):
        with pytest.raises(ValidationError, match="at least one filter"):
            build_search_query(SearchFilters(query="   "))


class TestParseArticles:
    """Tests for parse_articles."""

    def test_full_record(self):
        """Test every field of a complete efetch record."""
        article = parse_articles(EFETCH_XML)[0]

        assert article.pmid == "12345"
        assert article.title == "Exercise for late-life depression"
        assert article.authors == ["Smith J", "Exercise Trialists Group"]
        assert article.abstract == "BACKGROUND: Depression is common.\nRESULTS: Exercise helped."
        assert article.journal == "Journal of Geriatric Psychiatry"
        assert article.journal_abbrev == "J Geriatr Psychiatry"
        assert article.publication_date == "2021-03-05"
        assert article.publication_year == 2021
        assert article.doi == "10.1000/exercise.2021"
        assert article.pmc_id == "PMC999"
        assert article.keywords == ["exercise", "aged"]
        assert article.mesh_terms == ["Depression"]
        assert article.publication_types == ["Randomized Controlled Trial"]
        assert article.language == "eng"
        assert article.url == "https://pubmed.ncbi.nlm.nih.gov/12345/"

    def test_sparse_record(self):
        """Test MedlineDate and ELocationID fallbacks."""
        article = parse_articles(EFETCH_XML)[1]

        assert article.publication_date == "2019-11"
        assert article.publication_year == 2019
        assert article.doi == "10.1000/walk"
        assert article.abstract is None
        assert article.authors == []

    def test_malformed_xml(self):
        with pytest.raises(PubMedError, match="Could not parse"):
            parse_articles("<PubmedArticleSet><broken>")


class TestPubMedClient:
    """Tests for PubMedClient requests."""

    def test_search_ids_params(self, client, session):
        """Test esearch parameters including credentials and sort."""
        session.get.return_value = _esearch(["1", "2"], 40)

        ids, total = client.search_ids(SearchFilters(query="exercise", max_results=2, offset=10, sort_by="date"))

        assert (ids, total) == (["1", "2"], 40)
        url = session.get.call_args.args[0]
        params = session.get.call_args.kwargs["params"]
        assert url.endswith("/esearch.fcgi")
        assert params["term"] == "(exercise)"
        assert params["retmax"] == 2
        assert params["retstart"] == 10
        assert params["sort"] == "pub_date"
        assert params["api_key"] == "ncbi-key"
        assert params["email"] == "alice@example.com"
        assert params["db"] == "pubmed"

    def test_search_articles_paging(self, client, session):
        """Test that the next offset is reported while more results remain."""
        session.get.side_effect = [_esearch(["12345", "67890"], 5), _response(text=EFETCH_XML)]

        result = client.search_articles(SearchFilters(query="exercise", max_results=2))

        assert [a.pmid for a in result.articles] == ["12345", "67890"]
        assert result.total_count == 5
        assert result.has_more
        assert result.next_offset == 2
        assert session.get.call_args.kwargs["params"]["id"] == "12345,67890"

    def test_search_articles_last_page(self, client, session):
        session.get.side_effect = [_esearch(["12345", "67890"], 4), _response(text=EFETCH_XML)]
        result = client.search_articles(SearchFilters(query="exercise", max_results=2, offset=2))
        assert not result.has_more
        assert result.next_offset is None

    def test_no_results_skips_fetch(self, client, session):
        session.get.return_value = _esearch([], 0)
        result = client.search_articles(SearchFilters(query="nothing"))
        assert result.articles == []
        assert session.get.call_count == 1

    def test_fetch_in_chunks(self, client, session):
        """Test that large ID lists are split across requests."""
        session.get.return_value = _response(text="<PubmedArticleSet/>")
        client.fetch_articles([str(i) for i in range(450)])
        assert session.get.call_count == 3

    def test_retries_transient_status(self, client, session):
        """Test that 429 and 5xx responses are retried."""
        session.get.side_effect = [_response(429), _response(503), _esearch(["1"], 1)]
        ids, _ = client.search_ids(SearchFilters(query="exercise"))
        assert ids == ["1"]
        assert session.get.call_count == 3

    def test_gives_up_after_max_attempts(self, client, session):
        session.get.return_value = _response(500)
        with pytest.raises(PubMedError, match="HTTP 500"):
            client.search_ids(SearchFilters(query="exercise"))
        assert session.get.call_count == 3

    def test_connection_errors_are_retried(self, client, session):
        session.get.side_effect = [requests.ConnectionError("reset"), _esearch(["1"], 1)]
        assert client.search_ids(SearchFilters(query="exercise"))[0] == ["1"]

    def test_client_error_not_retried(self, client, session):
        session.get.return_value = _response(400)
        with pytest.raises(PubMedError):
            client.search_ids(SearchFilters(query="exercise"))
        assert session.get.call_count == 1

    def test_unexpected_json(self, client, session):
        session.get.return_value = _response(json_data={"error": "bad"})
        with pytest.raises(PubMedError, match="Unexpected esearch response"):
            client.search_ids(SearchFilters(query="exercise"))

    def test_validate_query(self, client, session):
        """Test match counting with a suggestion for empty results."""
        session.get.return_value = _esearch([], 0)
        result = client.validate_query(SearchFilters(query="zzzz", max_results=500))

        assert result == {
            "is_valid": False,
            "estimated_results": 0,
            "suggestion": "Try broader search terms or check spelling",
        }
        assert session.get.call_args.kwargs["params"]["retmax"] == 1

    def test_validate_query_rejected(self, client, session):
        """Test that a failed validation request reports an invalid query."""
        session.get.return_value = _response(400)

        assert client.validate_query(SearchFilters(query="((broken")) == {
            "is_valid": False,
            "estimated_results": 0,
            "suggestion": "Query validation failed - please check your search terms",
        }

    def test_validate_empty_query(self, client, session):
        assert client.validate_query(SearchFilters())["is_valid"] is False
        session.get.assert_not_called()

    def test_get_article_by_id(self, client, session):
        session.get.return_value = _response(text=EFETCH_XML)
        assert client.get_article_by_id("12345").pmid == "12345"
        assert session.get.call_args.kwargs["params"]["id"] == "12345"

    def test_get_article_by_id_missing(self, client, session):
        """Test that an unknown PMID or a blank one gives None."""
        session.get.return_value = _response(text="<PubmedArticleSet/>")
        assert client.get_article_by_id("999999999") is None
        assert client.get_article_by_id("  ") is None
        assert session.get.call_count == 1

    def test_get_related_articles(self, client, session):
        """Test that elink neighbours are fetched without the source article."""
        elink = _response(json_data={"linksets": [{
            "dbfrom": "pubmed",
            "ids": ["11111"],
            "linksetdbs": [
                {"dbto": "pubmed", "linkname": "pubmed_pubmed", "links": ["11111", "12345", "67890", "55555"]},
                {"dbto": "pubmed", "linkname": "pubmed_pubmed_reviews", "links": ["77777"]},
            ],
        }]})
        session.get.side_effect = [elink, _response(text=EFETCH_XML)]

        related = client.get_related_articles("11111", max_results=2)

        assert [a.pmid for a in related] == ["12345", "67890"]
        link_params = session.get.call_args_list[0].kwargs["params"]
        assert session.get.call_args_list[0].args[0].endswith("/elink.fcgi")
        assert link_params["linkname"] == "pubmed_pubmed"
        assert link_params["dbfrom"] == "pubmed"
        assert session.get.call_args.kwargs["params"]["id"] == "12345,67890"

    def test_get_related_articles_none(self, client, session):
        session.get.return_value = _response(json_data={"linksets": [{"dbfrom": "pubmed", "ids": ["11111"]}]})
        assert client.get_related_articles("11111") == []
        assert session.get.call_count == 1

    def test_from_settings(self, settings):
        settings.pubmed.api_key = "key"
        client = PubMedClient.from_settings(settings)
        assert client.api_key == "key"
        assert client.rate_limit_delay == 0
