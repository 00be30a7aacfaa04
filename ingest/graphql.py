"""
GitHub GraphQL bulk strategy.

Pull requests come back with their reviews, and issues with their comments, in one
paginated query each, which costs far fewer round trips than the REST listing plus
per-PR review calls. Pagination goes through ingest.fetcher with a cursor token.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Callable

from ingest.cancel import CancelToken
from ingest.errors import GraphQLError, FetchError
from ingest.fetcher import (
    Page,
    PageFetcher,
    FetchConfig,
    DateFilter,
    filter_by_date,
    hard_cutoff,
    fetch_all_pages,
    DEFAULT_EARLY_TERMINATION_THRESHOLD,
)
from normalize.models import Author, PullRequest, Review, Issue, IssueComment, PR_STATE_OPEN, PR_STATE_CLOSED, PR_STATE_MERGED
from normalize.util import parse_timestamp, format_timestamp
from storage.cache import NoopCache
from storage.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_GRAPHQL_URL = "https://api.github.com/graphql"

PR_QUERY = """
query($owner: String!, $name: String!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    pullRequests(first: 100, after: $cursor, states: [OPEN, MERGED, CLOSED], orderBy: {field: UPDATED_AT, direction: DESC}) {
      totalCount
      pageInfo { hasNextPage endCursor }
      nodes {
        number title state url createdAt updatedAt mergedAt closedAt
        additions deletions changedFiles baseRefName headRefName
        commits { totalCount }
        comments { totalCount }
        author { login avatarUrl ... on User { databaseId name } }
        reviews(first: 100) {
          nodes {
            databaseId state body submittedAt
            author { login avatarUrl ... on User { databaseId name } }
            comments { totalCount }
          }
        }
      }
    }
  }
}
"""

ISSUE_QUERY = """
query($owner: String!, $name: String!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    issues(first: 100, after: $cursor, orderBy: {field: CREATED_AT, direction: DESC}) {
      totalCount
      pageInfo { hasNextPage endCursor }
      nodes {
        number title state url createdAt updatedAt closedAt
        author { login avatarUrl ... on User { databaseId name } }
        labels(first: 20) { nodes { name } }
        comments(first: 100) {
          totalCount
          nodes {
            databaseId body url createdAt
            author { login avatarUrl ... on User { databaseId name } }
          }
        }
        timelineItems(last: 1, itemTypes: [CLOSED_EVENT]) {
          nodes { ... on ClosedEvent { actor { login avatarUrl } } }
        }
      }
    }
  }
}
"""


def convert_actor(raw: Optional[Dict[str, Any]]) -> Author:
    raw = raw or {}
    return Author(login=raw.get('login') or '', name=raw.get('name') or '', avatar_url=raw.get('avatarUrl') or '', id=raw.get('databaseId'))


def _total(raw: Optional[Dict[str, Any]]) -> int:
    return int((raw or {}).get('totalCount') or 0)


def convert_review_node(node: Dict[str, Any], repository: str, pr_number: int, pr_created_at: Optional[datetime]) -> Review:
    submitted_at = parse_timestamp(node.get('submittedAt'))
    response_time = None
    if submitted_at is not None and pr_created_at is not None:
        response_time = (submitted_at - pr_created_at).total_seconds()
    return Review(
        id=node.get('databaseId'),
        pull_request=pr_number,
        repository=repository,
        author=convert_actor(node.get('author')),
        state=node.get('state') or '',
        submitted_at=submitted_at,
        body=node.get('body') or '',
        comments_count=_total(node.get('comments')),
        response_time=response_time,
    )


def convert_pr_node(node: Dict[str, Any], repository: str) -> PullRequest:
    state = {'MERGED': PR_STATE_MERGED, 'CLOSED': PR_STATE_CLOSED}.get((node.get('state') or '').upper(), PR_STATE_OPEN)
    created_at = parse_timestamp(node.get('createdAt'))
    reviews = [convert_review_node(r, repository, node.get('number'), created_at) for r in (node.get('reviews') or {}).get('nodes') or []]
    pr = PullRequest(
        number=node.get('number'),
        title=node.get('title') or '',
        state=state,
        author=convert_actor(node.get('author')),
        repository=repository,
        created_at=created_at,
        updated_at=parse_timestamp(node.get('updatedAt')),
        merged_at=parse_timestamp(node.get('mergedAt')),
        closed_at=parse_timestamp(node.get('closedAt')),
        base_branch=node.get('baseRefName') or '',
        head_branch=node.get('headRefName') or '',
        additions=int(node.get('additions') or 0),
        deletions=int(node.get('deletions') or 0),
        files_changed=int(node.get('changedFiles') or 0),
        commit_count=_total(node.get('commits')),
        comments=_total(node.get('comments')),
        reviews=reviews,
        url=node.get('url') or '',
    )
    return pr.with_derived_fields()


def convert_comment_node(node: Dict[str, Any], repository: str, issue_number: int) -> IssueComment:
    return IssueComment(
        id=node.get('databaseId'),
        issue_number=issue_number,
        repository=repository,
        author=convert_actor(node.get('author')),
        created_at=parse_timestamp(node.get('createdAt')),
        body=node.get('body') or '',
        url=node.get('url') or '',
    )


def convert_issue_node(node: Dict[str, Any], repository: str) -> Issue:
    closers = [n.get('actor') for n in (node.get('timelineItems') or {}).get('nodes') or [] if n and n.get('actor')]
    issue = Issue(
        number=node.get('number'),
        title=node.get('title') or '',
        state=(node.get('state') or 'open').lower(),
        author=convert_actor(node.get('author')),
        repository=repository,
        created_at=parse_timestamp(node.get('createdAt')),
        updated_at=parse_timestamp(node.get('updatedAt')),
        closed_at=parse_timestamp(node.get('closedAt')),
        closed_by=convert_actor(closers[-1]) if closers else None,
        labels=[lbl.get('name', '') for lbl in (node.get('labels') or {}).get('nodes') or []],
        comments=_total(node.get('comments')),
        url=node.get('url') or '',
    )
    return issue.replace(time_to_close=issue.calculate_time_to_close())


def pr_relevant_date(node: Dict[str, Any]) -> Optional[datetime]:
    """Merged date for merged PRs, closed date for closed ones, creation date while open.

    The PR query is ordered by UPDATED_AT, not by this date. The early-termination and
    hard-cutoff checks assume the two orders roughly agree: an old PR updated recently
    (a late comment, a label change) shows up early with an old relevant date and can end
    the walk before newer PRs further down are reached.
    """
    return parse_timestamp(node.get('mergedAt')) or parse_timestamp(node.get('closedAt')) or parse_timestamp(node.get('createdAt'))


class ConnectionFetcher(PageFetcher):
    """Cursor-paginated GraphQL connection (``repository.<connection>``) as a PageFetcher."""

    first_token = None

    def __init__(
        self,
        client: 'GraphQLClient',
        query: str,
        owner: str,
        name: str,
        connection: str,
        date_of: Callable[[Dict[str, Any]], Optional[datetime]],
        convert: Callable[[Dict[str, Any]], Any],
        from_cache: Callable[[Dict[str, Any]], Any],
        since: Optional[datetime],
        until: Optional[datetime],
        cancel: Optional[CancelToken] = None,
    ):
        self.client = client
        self.query = query
        self.owner = owner
        self.name = name
        self.connection = connection
        self._date_of = date_of
        self._convert = convert
        self._from_cache = from_cache
        self.since = since
        self.until = until
        self.cutoff = hard_cutoff(since)
        self.cancel = cancel

    def fetch_page(self, token: Any) -> Page:
        data = self.client.query(self.query, {'owner': self.owner, 'name': self.name, 'cursor': token}, self.cancel)
        repo = (data or {}).get('repository')
        if repo is None:
            raise FetchError(f"repository {self.owner}/{self.name} not found via GraphQL", status=404)
        conn = repo.get(self.connection) or {}
        info = conn.get('pageInfo') or {}
        return Page(conn.get('nodes') or [], has_next=bool(info.get('hasNextPage')), next_token=info.get('endCursor'))

    def filter(self, item: Any) -> DateFilter:
        return filter_by_date(self._date_of(item), self.since, self.until)

    def past_hard_cutoff(self, item: Any) -> bool:
        ts = self._date_of(item)
        return self.cutoff is not None and ts is not None and ts < self.cutoff

    def convert(self, item: Any) -> Any:
        return self._convert(item)

    def from_cache(self, raw: Any) -> Any:
        return self._from_cache(raw)


class IssueWithComments:
    """An issue bundled with its in-window comments, the unit cached for the issues query."""

    def __init__(self, issue: Issue, comments: List[IssueComment]):
        self.issue = issue
        self.comments = comments

    def to_dict(self):
        return {'issue': self.issue.to_dict(), 'comments': [c.to_dict() for c in self.comments]}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'IssueWithComments':
        return cls(Issue.from_dict(raw['issue']), [IssueComment.from_dict(c) for c in raw.get('comments') or []])


class GraphQLClient:
    def __init__(
        self,
        token: str,
        url: Optional[str] = None,
        cache=None,
        retry_policy: Optional[RetryPolicy] = None,
        report: Optional[Callable[[str], None]] = None,
        early_termination_threshold: int = DEFAULT_EARLY_TERMINATION_THRESHOLD,
    ):
        self.token = token
        self.url = url or DEFAULT_GRAPHQL_URL
        self.cache = cache if cache is not None else NoopCache()
        self.retry_policy = retry_policy or RetryPolicy()
        self.report = report
        self.early_termination_threshold = early_termination_threshold
        self.headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def query(self, query: str, variables: Dict[str, Any], cancel: Optional[CancelToken] = None) -> Dict[str, Any]:
        """POST a query and return its ``data``. A payload with ``errors`` raises GraphQLError."""
        res = self.retry_policy.request('POST', self.url, headers=self.headers, json_body={'query': query, 'variables': variables}, cancel=cancel)
        status = res.get('status', 0)
        body = res.get('response')
        if status != 200:
            raise FetchError(f"GraphQL request returned status {status}", status=status)
        if not isinstance(body, dict):
            raise GraphQLError("GraphQL response was not a JSON object")
        if body.get('errors'):
            messages = '; '.join(str(e.get('message', e)) if isinstance(e, dict) else str(e) for e in body['errors'])
            raise GraphQLError(f"GraphQL errors: {messages}")
        return body.get('data') or {}

    def paginate(
        self,
        query: str,
        owner: str,
        name: str,
        connection: str,
        resource: str,
        date_of: Callable[[Dict[str, Any]], Optional[datetime]],
        convert: Callable[[Dict[str, Any]], Any],
        from_cache: Callable[[Dict[str, Any]], Any],
        since: Optional[datetime],
        until: Optional[datetime],
        cancel: Optional[CancelToken] = None,
    ) -> List[Any]:
        """Walk one cursor-paginated connection newest-first.

        Stops after ``early_termination_threshold`` consecutive pages of old items or
        at the first item past the hard cutoff. The converted result is cached per
        repository and window.
        """
        fetcher = ConnectionFetcher(
            self, query, owner, name, connection,
            date_of=date_of,
            convert=convert,
            from_cache=from_cache,
            since=since,
            until=until,
            cancel=cancel,
        )
        config = FetchConfig(f'{resource} (GraphQL)', early_termination_threshold=self.early_termination_threshold)
        key = f"gql:{connection}:{owner}/{name}:{format_timestamp(since) or ''}:{format_timestamp(until) or ''}"
        return fetch_all_pages(self.cache, key, config, fetcher, self.report, cancel)

    def fetch_prs_with_reviews(self, owner: str, name: str, since: Optional[datetime], until: Optional[datetime], cancel: Optional[CancelToken] = None) -> Tuple[List[PullRequest], List[Review]]:
        repo = f"{owner}/{name}"
        prs = self.paginate(
            PR_QUERY, owner, name, 'pullRequests', 'pull requests',
            date_of=pr_relevant_date,
            convert=lambda node: convert_pr_node(node, repo),
            from_cache=PullRequest.from_dict,
            since=since,
            until=until,
            cancel=cancel,
        )
        reviews = [r for pr in prs for r in pr.reviews]
        return prs, reviews

    def fetch_issues_with_comments(self, owner: str, name: str, since: Optional[datetime], until: Optional[datetime], cancel: Optional[CancelToken] = None) -> Tuple[List[Issue], List[IssueComment]]:
        repo = f"{owner}/{name}"

        def convert(node: Dict[str, Any]) -> IssueWithComments:
            comments = []
            for c in (node.get('comments') or {}).get('nodes') or []:
                comment = convert_comment_node(c, repo, node.get('number'))
                if filter_by_date(comment.created_at, since, until) is DateFilter.INCLUDE:
                    comments.append(comment)
            return IssueWithComments(convert_issue_node(node, repo), comments)

        bundles = self.paginate(
            ISSUE_QUERY, owner, name, 'issues', 'issues',
            date_of=lambda node: parse_timestamp(node.get('createdAt')),
            convert=convert,
            from_cache=IssueWithComments.from_dict,
            since=since,
            until=until,
            cancel=cancel,
        )
        return [b.issue for b in bundles], [c for b in bundles for c in b.comments]


__all__ = ["GraphQLClient", "ConnectionFetcher", "PR_QUERY", "ISSUE_QUERY", "convert_pr_node", "convert_issue_node"]
