"""
Tests for the Facebook, Google and Yelp providers against mocked platform APIs
"""
from datetime import datetime, timezone

import httpx
import pytest

from review_ingestion.core.config import Settings
from review_ingestion.core.exceptions import (
    AuthenticationError, AuthorizationRequired, ConfigurationError, NoReviewsFoundError, PlatformAPIError,
)
from review_ingestion.models.schemas import AuthContext
from review_ingestion.providers.facebook import FacebookProvider, is_review_like
from review_ingestion.providers.google import GoogleProvider
from review_ingestion.providers.yelp import YelpProvider
from review_ingestion.services.oauth_service import GoogleOAuthService
from review_ingestion.services.zembra_client import ZembraClient


def _unexpected(request):
    raise AssertionError(f"Unexpected request to {request.url}")


class TestFacebookProvider:
    """Ratings + review-like posts from the Graph API"""

    async def test_ratings_403_falls_back_to_review_posts(self, test_settings, mock_http):
        def handler(request):
            if request.url.path.endswith("/ratings"):
                return httpx.Response(403, json={"error": {"message": "(#200) Permissions error"}})
            if request.url.path.endswith("/posts"):
                return httpx.Response(200, json={"data": [
                    {"id": "page-1_111", "message": "Great service from the whole team!",
                     "created_time": "2024-03-01T10:15:00+0000", "from": {"id": "u1", "name": "Ana"}},
                    {"id": "page-1_112", "message": "We are open on Sunday",
                     "created_time": "2024-03-02T10:15:00+0000"},
                ]})
            return _unexpected(request)

        provider = FacebookProvider(test_settings, mock_http(handler))
        reviews = await provider.fetch_reviews("page-1", "page-token")

        assert len(reviews) == 1
        review = reviews[0]
        assert review.external_id == "page-1_111"
        assert review.rating == 0
        assert review.author_name == "Ana"
        assert review.published_at == datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc)

    async def test_both_sources_empty_raises(self, test_settings, mock_http):
        def handler(request):
            if request.url.path.endswith("/ratings"):
                return httpx.Response(403, json={"error": {"message": "restricted"}})
            return httpx.Response(200, json={"data": [{"id": "p1", "message": "Opening hours changed"}]})

        provider = FacebookProvider(test_settings, mock_http(handler))
        with pytest.raises(NoReviewsFoundError):
            await provider.fetch_reviews("page-1", "page-token")

    async def test_ratings_mapping(self, test_settings, mock_http):
        def handler(request):
            if request.url.path.endswith("/ratings"):
                assert request.url.params["access_token"] == "page-token"
                return httpx.Response(200, json={"data": [
                    {"created_time": "2024-03-01T10:15:00+0000", "recommendation_type": "positive",
                     "review_text": "Would recommend"},
                    {"created_time": "2024-03-02T10:15:00+0000", "recommendation_type": "negative",
                     "review_text": "Cold food"},
                    {"created_time": "2024-03-03T10:15:00+0000", "rating": 4, "review_text": "Nice"},
                    {"created_time": "2024-03-04T10:15:00+0000", "recommendation_type": "positive"},
                ]})
            return httpx.Response(200, json={"data": []})

        provider = FacebookProvider(test_settings, mock_http(handler))
        reviews = await provider.fetch_reviews("page-1", "page-token")

        assert [review.rating for review in reviews] == [5, 1, 4]
        assert all(review.author_name == "anonymous" for review in reviews)
        # Re-fetching yields the same synthesized ids
        again = await provider.fetch_reviews("page-1", "page-token")
        assert [r.external_id for r in again] == [r.external_id for r in reviews]

    async def test_get_user_pages_keeps_page_token(self, test_settings, mock_http):
        def handler(request):
            assert request.url.path.endswith("/me/accounts")
            return httpx.Response(200, json={"data": [{
                "id": "page-1", "name": "Bistro", "link": "https://facebook.com/bistro",
                "picture": {"data": {"url": "https://img/bistro.png"}},
                "category": "Restaurant", "access_token": "page-token",
            }]})

        provider = FacebookProvider(test_settings, mock_http(handler))
        pages = await provider.get_user_pages("user-token")

        assert len(pages) == 1
        assert pages[0].id == "page-1"
        assert pages[0].profile_picture == "https://img/bistro.png"
        assert pages[0].metadata["access_token"] == "page-token"

    async def test_authenticate_rejections(self, test_settings, mock_http):
        provider = FacebookProvider(test_settings, mock_http(_unexpected))

        with pytest.raises(AuthenticationError, match="missing"):
            await provider.authenticate(None)
        with pytest.raises(AuthenticationError, match="HTTPS"):
            await provider.authenticate(AuthContext(access_token="t", origin="http://example.com"))
        with pytest.raises(AuthenticationError, match="cancelled"):
            await provider.authenticate(AuthContext(origin="https://app.example.com"))

    async def test_authenticate_returns_sdk_token(self, test_settings, mock_http):
        provider = FacebookProvider(test_settings, mock_http(_unexpected))
        token = await provider.authenticate(AuthContext(access_token="user-token", origin="http://localhost:3000"))
        assert token == "user-token"

    async def test_authenticate_exchanges_long_lived_token(self, test_settings, mock_http):
        settings = test_settings.model_copy(update={"FACEBOOK_APP_SECRET": "app-secret"})

        def handler(request):
            assert request.url.params["grant_type"] == "fb_exchange_token"
            assert request.url.params["fb_exchange_token"] == "short-token"
            return httpx.Response(200, json={"access_token": "long-token"})

        provider = FacebookProvider(settings, mock_http(handler))
        token = await provider.authenticate(AuthContext(access_token="short-token"))
        assert token == "long-token"

    def test_missing_app_id(self):
        with pytest.raises(ConfigurationError):
            FacebookProvider(Settings(FACEBOOK_APP_ID=None))

    @pytest.mark.parametrize("message, expected", [
        ("Amazing pizza", True),
        ("The STAFF were friendly", True),
        ("New menu this week", False),
        (None, False),
    ])
    def test_review_keywords(self, message, expected):
        assert is_review_like(message) is expected


class TestGoogleProvider:
    """Authorization-code flow, locations and Places reviews"""

    async def test_fetch_without_place_id_returns_empty(self, test_settings, mock_http):
        provider = GoogleProvider(test_settings, mock_http(_unexpected))
        assert await provider.fetch_reviews("locations/1", "token") == []

    async def test_fetch_reviews_from_places(self, test_settings, mock_http):
        def handler(request):
            assert request.url.params["place_id"] == "place-1"
            assert request.url.params["key"] == "test-maps-key"
            return httpx.Response(200, json={"status": "OK", "result": {"reviews": [
                {"author_name": "Bob", "rating": 5, "text": "Superb", "time": 1700000000,
                 "profile_photo_url": "https://img/bob.png"},
                {"author_name": "Empty", "rating": 0, "text": ""},
            ]}})

        provider = GoogleProvider(test_settings, mock_http(handler))
        reviews = await provider.fetch_reviews("locations/1", "token", {"place_id": "place-1"})

        assert len(reviews) == 1
        assert reviews[0].author_name == "Bob"
        assert reviews[0].author_avatar == "https://img/bob.png"
        assert reviews[0].published_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    async def test_transient_errors_are_retried(self, test_settings, mock_http):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503, json={"error_message": "try later"})
            return httpx.Response(200, json={"status": "ZERO_RESULTS", "result": {}})

        provider = GoogleProvider(test_settings, mock_http(handler))
        assert await provider.fetch_reviews("locations/1", "token", {"place_id": "place-1"}) == []
        assert len(calls) == 2

    async def test_permission_errors_are_not_retried(self, test_settings, mock_http):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(403, json={"error": {"message": "forbidden"}})

        provider = GoogleProvider(test_settings, mock_http(handler))
        with pytest.raises(PlatformAPIError) as exc_info:
            await provider.fetch_reviews("locations/1", "token", {"place_id": "place-1"})
        assert exc_info.value.status_code == 403
        assert len(calls) == 1

    async def test_missing_maps_key(self, test_settings, mock_http):
        settings = test_settings.model_copy(update={"GOOGLE_MAPS_API_KEY": None})
        provider = GoogleProvider(settings, mock_http(_unexpected))
        with pytest.raises(ConfigurationError):
            await provider.fetch_reviews("locations/1", "token", {"place_id": "place-1"})

    async def test_authenticate_without_code_requires_authorization(self, test_settings, mock_http):
        provider = GoogleProvider(test_settings, mock_http(_unexpected))
        with pytest.raises(AuthorizationRequired) as exc_info:
            await provider.authenticate(AuthContext())

        url = exc_info.value.authorization_url
        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert "client_id=test-google-client-id" in url
        assert "response_type=code" in url
        assert "access_type=offline" in url

    async def test_authenticate_with_error(self, test_settings, mock_http):
        provider = GoogleProvider(test_settings, mock_http(_unexpected))
        with pytest.raises(AuthenticationError, match="Google authentication failed: access_denied"):
            await provider.authenticate(AuthContext(error="access_denied"))

    async def test_authenticate_rejects_insecure_redirect(self, test_settings, mock_http):
        provider = GoogleProvider(test_settings, mock_http(_unexpected))
        with pytest.raises(AuthenticationError, match="HTTPS"):
            await provider.authenticate(AuthContext(code="abc", redirect_uri="http://evil.example/callback"))

    async def test_authenticate_exchanges_code(self, test_settings, mock_http):
        def handler(request):
            assert str(request.url) == test_settings.GOOGLE_TOKEN_URL
            assert b"code=auth-code" in request.content
            assert b"client_secret=test-google-secret" in request.content
            return httpx.Response(200, json={"access_token": "google-token", "expires_in": 3599})

        provider = GoogleProvider(test_settings, mock_http(handler))
        assert await provider.authenticate(AuthContext(code="auth-code")) == "google-token"

    async def test_get_user_pages_skips_failing_account(self, test_settings, mock_http):
        def handler(request):
            path = request.url.path
            if path.endswith("/accounts"):
                return httpx.Response(200, json={"accounts": [{"name": "accounts/1"}, {"name": "accounts/2"}]})
            if path.endswith("accounts/1/locations"):
                return httpx.Response(403, json={"error": {"message": "no access"}})
            if path.endswith("accounts/2/locations"):
                assert request.url.params["readMask"]
                return httpx.Response(200, json={"locations": [
                    {"name": "locations/9", "title": "Downtown", "websiteUri": "https://downtown.example",
                     "phoneNumbers": {"primaryPhone": "+1 555"}},
                ]})
            return _unexpected(request)

        provider = GoogleProvider(test_settings, mock_http(handler))
        pages = await provider.get_user_pages("user-token")

        assert [page.id for page in pages] == ["locations/9"]
        assert pages[0].metadata["account_name"] == "accounts/2"
        assert pages[0].metadata["access_token"] == "user-token"

    def test_missing_client_id(self):
        with pytest.raises(ConfigurationError):
            GoogleProvider(Settings(GOOGLE_CLIENT_ID=None))


class TestGoogleOAuthService:

    async def test_failed_exchange(self, test_settings, mock_http):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad Request"})

        service = GoogleOAuthService(test_settings, mock_http(handler))
        with pytest.raises(AuthenticationError, match="Failed to exchange code for token: Bad Request"):
            await service.exchange_code_for_token("expired-code")

    async def test_missing_secret(self, test_settings, mock_http):
        settings = test_settings.model_copy(update={"GOOGLE_CLIENT_SECRET": None})
        service = GoogleOAuthService(settings, mock_http(_unexpected))
        with pytest.raises(ConfigurationError):
            await service.exchange_code_for_token("code")


def zembra_reviews_handler(reviews, empty_polls=0, seen=None):
    """Zembra mock: job creation, then ``empty_polls`` empty responses before ``reviews``"""
    polls = []

    def handler(request):
        if seen is not None:
            seen.append(request)
        assert request.headers["Authorization"] == "Bearer test-zembra-token"
        if request.method == "POST":
            return httpx.Response(200, json={"status": "SUCCESS", "data": {"job": {"jobId": "job-1"}}})
        polls.append(request)
        if len(polls) <= empty_polls:
            return httpx.Response(200, json={"status": "SUCCESS", "data": {"reviews": []}})
        return httpx.Response(200, json={"status": "SUCCESS", "data": {"reviews": reviews}})

    return handler


class TestYelpProvider:
    """Yelp Fusion search plus Zembra reviews"""

    async def test_fetch_reviews_polls_until_available(self, test_settings, mock_http):
        seen = []
        handler = zembra_reviews_handler([
            {"id": "z1", "text": "Best tacos", "rating": 5, "timestamp": "2024-05-01T12:00:00Z",
             "author": {"name": "Cy", "photo": "https://img/cy.png"}},
            {"id": "z2", "text": "Meh", "recommendation": -1, "timestamp": 1714564800000},
            {"id": "z3", "text": "Fine", "recommendation": 1},
            {"id": "z4", "text": "", "rating": None},
        ], empty_polls=1, seen=seen)

        provider = YelpProvider(test_settings, mock_http(handler))
        reviews = await provider.fetch_reviews("tacos-place-sf", "")

        assert [review.external_id for review in reviews] == ["z1", "z2", "z3"]
        assert [review.rating for review in reviews] == [5, 1, 5]
        assert reviews[0].author_avatar == "https://img/cy.png"
        assert reviews[1].author_name == "Anonymous"
        assert [request.method for request in seen] == ["POST", "GET", "GET"]
        assert seen[0].url.params["slug"] == "tacos-place-sf"
        assert seen[0].url.params["network"] == "yelp"

    async def test_fetch_reviews_gives_up_with_empty_result(self, test_settings, mock_http):
        seen = []
        provider = YelpProvider(test_settings, mock_http(zembra_reviews_handler([], seen=seen)))
        assert await provider.fetch_reviews("quiet-place", "") == []
        # One job creation plus ZEMBRA_POLL_ATTEMPTS polls
        assert len(seen) == 1 + test_settings.ZEMBRA_POLL_ATTEMPTS

    async def test_incremental_fetch_sends_posted_after(self, test_settings, mock_http):
        seen = []
        handler = zembra_reviews_handler([{"id": "z9", "text": "New one", "rating": 4}], seen=seen)
        provider = YelpProvider(test_settings, mock_http(handler))

        posted_after = datetime(2024, 5, 1, tzinfo=timezone.utc)
        await provider.fetch_reviews("tacos-place-sf", "", {"posted_after": posted_after.isoformat()})

        poll = seen[-1]
        assert poll.url.params["postedAfter"] == str(int(posted_after.timestamp() * 1000))
        assert "postedAfter" not in seen[0].url.params

    async def test_search_businesses(self, test_settings, mock_http):
        def handler(request):
            assert request.url.path == "/v3/businesses/search"
            assert request.headers["Authorization"] == "Bearer test-yelp-key"
            assert request.url.params["term"] == "Tacos"
            assert request.url.params["location"] == "San Francisco"
            return httpx.Response(200, json={"businesses": [{
                "id": "abc123", "alias": "tacos-place-sf", "name": "Tacos Place",
                "url": "https://www.yelp.com/biz/tacos-place-sf", "rating": 4.5, "review_count": 120,
                "location": {"display_address": ["1 Main St", "San Francisco, CA"], "city": "San Francisco",
                             "state": "CA"},
            }]})

        provider = YelpProvider(test_settings, mock_http(handler))
        pages = await provider.search_businesses("Tacos", "San Francisco")

        assert pages[0].id == "tacos-place-sf"
        assert pages[0].metadata["address"] == "1 Main St, San Francisco, CA"
        assert pages[0].metadata["review_count"] == 120

    async def test_search_without_key(self, test_settings, mock_http):
        settings = test_settings.model_copy(update={"YELP_API_KEY": None})
        provider = YelpProvider(settings, mock_http(_unexpected))
        with pytest.raises(ConfigurationError):
            await provider.search_businesses("Tacos")

    async def test_no_user_auth(self, test_settings, mock_http):
        provider = YelpProvider(test_settings, mock_http(_unexpected))
        assert provider.requires_user_auth is False
        assert provider.supports_incremental_fetch is True
        assert await provider.authenticate(None) == ""
        with pytest.raises(PlatformAPIError, match="search_businesses"):
            await provider.get_user_pages("")

    async def test_missing_zembra_token(self, test_settings, mock_http):
        settings = test_settings.model_copy(update={"ZEMBRA_API_TOKEN": None})
        client = ZembraClient(settings, mock_http(_unexpected))
        with pytest.raises(ConfigurationError):
            await client.create_review_job("yelp", "tacos-place-sf")

    def test_transform_keeps_title_and_owner_reply(self):
        review = YelpProvider.transform_review({
            "id": "z1",
            "text": "Great brunch",
            "rating": 5,
            "title": "Nice visit",
            "timestamp": "2024-05-01T12:00:00Z",
            "reply": {"text": "Thanks!", "timestamp": "2024-05-02T08:30:00Z"},
        })

        assert review.title == "Nice visit"
        assert review.reply_content == "Thanks!"
        assert review.reply_at == datetime(2024, 5, 2, 8, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("author, expected", [
        ("Cy", "Cy"),
        (None, "Anonymous"),
        (["Cy"], "Anonymous"),
        ({"name": 42}, "Anonymous"),
    ])
    def test_transform_tolerates_odd_author_shapes(self, author, expected):
        review = YelpProvider.transform_review({"id": "z1", "text": "Good", "rating": 4, "author": author})

        assert review.author_name == expected
        assert review.author_avatar is None

    def test_transform_ignores_malformed_reply(self):
        review = YelpProvider.transform_review({"id": "z1", "text": "Good", "rating": 4, "reply": "Thanks"})

        assert review.reply_content is None
        assert review.reply_at is None
