# backend/dashboard.py
import time
import uuid
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from config import ConfigurationError, DashboardConfig
from meta import (
    DEFAULT_TIMEFRAME,
    MetricValue,
    clamp_int,
    gget,
    insights_to_numbers,
    media_engagement,
    period_for_timeframe,
    story_completion_rate,
    timeframe_range,
    to_metric_values,
    utc_today,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_MEDIA = 25
MIN_MEDIA = 1
MAX_MEDIA = 50
STORIES_LIMIT = 25
MAX_WORKERS = MAX_MEDIA + STORIES_LIMIT

PROFILE_FIELDS = "id,username,name,biography,followers_count,follows_count,media_count,profile_picture_url,website"
MEDIA_FIELDS = "id,caption,media_type,media_url,permalink,thumbnail_url,timestamp,like_count,comments_count"
STORY_FIELDS = "id,media_type,media_url,permalink,timestamp"

VIDEO_MEDIA_TYPES = {"REELS", "VIDEO"}
REEL_METRICS = [
    "reach",
    "impressions",
    "saved",
    "shares",
    "total_interactions",
    "plays",
    "video_views",
    "clips_replays_count",
    "ig_reels_aggregated_all_plays_count",
    "ig_reels_avg_watch_time",
    "ig_reels_video_view_total_time",
]
POST_METRICS = ["reach", "impressions", "saved", "shares", "total_interactions", "views", "plays", "video_views"]
STORY_METRICS = ["impressions", "reach", "replies", "exits", "taps_forward", "taps_back", "navigation"]
USER_DAY_METRICS = [
    "accounts_engaged",
    "reach",
    "total_interactions",
    "likes",
    "comments",
    "saved",
    "shares",
    "replies",
    "profile_links_taps",
    "views",
]
PAGE_DAY_METRICS = [
    "page_post_engagements",
    "page_impressions",
    "page_impressions_unique",
    "page_views_total",
    "page_fans",
    "page_total_actions",
    "page_daily_follows",
    "page_daily_unfollows_unique",
]
PAGE_NOT_CONFIGURED_MESSAGE = "FB_PAGE_ID not set; skipping page insights"


@dataclass
class DashboardRequest:
    business_id: Optional[str]
    timeframe: str = DEFAULT_TIMEFRAME
    max_media: int = DEFAULT_MAX_MEDIA
    include_page: bool = False

    @classmethod
    def from_payload(cls, payload: Any, default_business_id: Optional[str] = None) -> "DashboardRequest":
        if not isinstance(payload, dict):
            payload = {}
        business_id = payload.get("businessId")
        if business_id is not None and not isinstance(business_id, str):
            business_id = str(business_id)
        timeframe = payload.get("timeframe")
        if not isinstance(timeframe, str) or not timeframe:
            timeframe = DEFAULT_TIMEFRAME
        return cls(
            business_id=business_id or default_business_id,
            timeframe=timeframe,
            max_media=clamp_int(payload.get("maxMedia"), DEFAULT_MAX_MEDIA, MIN_MEDIA, MAX_MEDIA),
            include_page=bool(payload.get("includePage")),
        )


@dataclass
class FetchResult:
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def attempt(label: str, fn: Callable[..., Any], *args, **kwargs) -> FetchResult:
    try:
        return FetchResult(value=fn(*args, **kwargs))
    except Exception as err:  # noqa: BLE001
        logger.warning("%s failed: %s", label, err)
        return FetchResult(error=f"{label} failed: {err}")


class GraphFetcher:
    """Chamadas à Graph API com o token e a versão configurados."""

    def __init__(self, config: DashboardConfig, access_token: Optional[str] = None):
        self.config = config
        self.access_token = access_token or config.access_token

    def get(self, path: str, params: Optional[dict] = None):
        return gget(
            path,
            params,
            token=self.access_token,
            version=self.config.graph_version,
            timeout=self.config.request_timeout,
            app_secret=self.config.app_secret,
        )

    def profile(self, business_id: str) -> Dict[str, Any]:
        return self.get(f"/{business_id}", {"fields": PROFILE_FIELDS})

    def media(self, business_id: str, limit: int) -> List[Dict[str, Any]]:
        payload = self.get(f"/{business_id}/media", {"fields": MEDIA_FIELDS, "limit": str(limit)})
        return _data_list(payload)

    def stories(self, business_id: str, limit: int = STORIES_LIMIT) -> List[Dict[str, Any]]:
        payload = self.get(f"/{business_id}/stories", {"fields": STORY_FIELDS, "limit": str(limit)})
        return _data_list(payload)

    def media_insights(self, media: Dict[str, Any]) -> Dict[str, float]:
        metrics = REEL_METRICS if media.get("media_type") in VIDEO_MEDIA_TYPES else POST_METRICS
        payload = self.get(f"/{media['id']}/insights", {"metric": ",".join(metrics)})
        return insights_to_numbers(payload)

    def story_insights(self, story_id: str) -> Dict[str, float]:
        payload = self.get(f"/{story_id}/insights", {"metric": ",".join(STORY_METRICS)})
        return insights_to_numbers(payload)

    def insights(self, object_id: str, params: Dict[str, str]) -> List[MetricValue]:
        return to_metric_values(self.get(f"/{object_id}/insights", params))


def _data_list(payload: Any) -> List[Dict[str, Any]]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


def _first_or_none(metrics: List[MetricValue]) -> Optional[MetricValue]:
    return metrics[0] if metrics else None


def enrich_media(fetcher: GraphFetcher, media: Dict[str, Any]) -> Dict[str, Any]:
    try:
        insights = fetcher.media_insights(media)
    except Exception as err:  # noqa: BLE001
        logger.warning("Falha ao buscar insights da mídia %s: %s", media.get("id"), err)
        return {**media, "insights": {"engagement": media_engagement(media)}}
    return {**media, "insights": {**insights, "engagement": media_engagement(media, insights)}}


def enrich_story(fetcher: GraphFetcher, story: Dict[str, Any]) -> Dict[str, Any]:
    try:
        insights = fetcher.story_insights(story["id"])
    except Exception as err:  # noqa: BLE001
        logger.warning("Falha ao buscar insights do story %s: %s", story.get("id"), err)
        return {**story, "insights": {}}
    return {**story, "insights": {**insights, "completion_rate": story_completion_rate(insights)}}


def enrich_all(
    fetcher: GraphFetcher,
    media_items: List[Dict[str, Any]],
    story_items: List[Dict[str, Any]],
):
    """Dispara os insights de mídias e stories numa única onda concorrente."""
    total = len(media_items) + len(story_items)
    if total == 0:
        return [], []
    with ThreadPoolExecutor(max_workers=min(total, MAX_WORKERS)) as executor:
        media_futures = [executor.submit(enrich_media, fetcher, item) for item in media_items]
        story_futures = [executor.submit(enrich_story, fetcher, item) for item in story_items]
        media = [future.result() for future in media_futures]
        stories = [future.result() for future in story_futures]
    return media, stories


def fetch_account_insights(fetcher: GraphFetcher, business_id: str, timeframe: str) -> Dict[str, Any]:
    since, until = timeframe_range(timeframe)
    results = {
        "user_insights": attempt(
            "user_insights",
            fetcher.insights,
            business_id,
            {"metric": ",".join(USER_DAY_METRICS), "period": "day", "since": since, "until": until},
        ),
        "engaged_audience_demographics": attempt(
            "engaged_audience_demographics",
            lambda: _first_or_none(fetcher.insights(
                business_id,
                {"metric": "engaged_audience_demographics", "period": period_for_timeframe(timeframe)},
            )),
        ),
        "follower_demographics": attempt(
            "follower_demographics",
            lambda: _first_or_none(fetcher.insights(
                business_id,
                {"metric": "follower_demographics", "period": "lifetime"},
            )),
        ),
        "follows_and_unfollows": attempt(
            "follows_and_unfollows",
            lambda: _first_or_none(fetcher.insights(
                business_id,
                {"metric": "follows_and_unfollows", "period": "day", "since": since, "until": until},
            )),
        ),
    }
    return results


def fetch_page_insights(fetcher: GraphFetcher, page_id: str, timeframe: str) -> FetchResult:
    since, until = timeframe_range(timeframe)
    return attempt(
        "page_insights",
        fetcher.insights,
        page_id,
        {"metric": ",".join(PAGE_DAY_METRICS), "period": "day", "since": since, "until": until},
    )


def _serialize_metric(metric: Optional[MetricValue]) -> Optional[Dict[str, Any]]:
    return metric.to_dict() if metric is not None else None


def build_dashboard(
    config: DashboardConfig,
    dashboard_request: DashboardRequest,
    *,
    request_id: Optional[str] = None,
    fetcher: Optional[GraphFetcher] = None,
) -> Dict[str, Any]:
    """
    Monta o payload completo do dashboard.

    Só a ausência de credenciais ou a falha do perfil abortam a chamada; as
    demais consultas degradam o próprio campo e registram em ``messages``.
    """
    request_id = request_id or str(uuid.uuid4())
    started = time.monotonic()
    business_id = dashboard_request.business_id or config.business_id
    if not business_id or not config.access_token:
        raise ConfigurationError("Missing IG_BUSINESS_ID / IG_ACCESS_TOKEN secrets")

    fetcher = fetcher or GraphFetcher(config)
    timeframe = dashboard_request.timeframe
    messages: List[str] = []

    profile = fetcher.profile(business_id)

    media_result = attempt("media", fetcher.media, business_id, dashboard_request.max_media)
    stories_result = attempt("stories", fetcher.stories, business_id)
    for result in (media_result, stories_result):
        if not result.ok:
            messages.append(result.error)

    media, stories = enrich_all(fetcher, media_result.value or [], stories_result.value or [])

    account = fetch_account_insights(fetcher, business_id, timeframe)
    for result in account.values():
        if not result.ok:
            messages.append(result.error)

    page_insights: Optional[List[Dict[str, Any]]] = None
    if dashboard_request.include_page:
        if not config.page_id:
            messages.append(PAGE_NOT_CONFIGURED_MESSAGE)
        else:
            page_result = fetch_page_insights(fetcher, config.page_id, timeframe)
            if not page_result.ok:
                messages.append(page_result.error)
            page_insights = [metric.to_dict() for metric in page_result.value or []]

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "[ig-dashboard] %s montado em %sms (media=%s stories=%s avisos=%s)",
        request_id, duration_ms, len(media), len(stories), len(messages),
    )
    return {
        "success": True,
        "request_id": request_id,
        "duration_ms": duration_ms,
        "snapshot_date": utc_today().isoformat(),
        "provider": "instagram_graph_api",
        "profile": profile,
        "user_insights": [metric.to_dict() for metric in account["user_insights"].value or []],
        "engaged_audience_demographics": _serialize_metric(account["engaged_audience_demographics"].value),
        "follower_demographics": _serialize_metric(account["follower_demographics"].value),
        "follows_and_unfollows": _serialize_metric(account["follows_and_unfollows"].value),
        "media": media,
        "stories": stories,
        "page_insights": page_insights,
        "messages": messages,
    }
