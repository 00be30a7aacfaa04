"""
Identity reconciliation.

Raw identities come from three places: git history (name + email, rarely a login),
REST/GraphQL records (login + numeric id) and public profiles (login, name, email).
IdentityReconciler maps every raw identity to one canonical login, in priority order:

1. user-supplied alias table (emails / names, case-insensitive)
2. public profile email
3. a platform login already on the identity (platform records, noreply emails,
   numeric noreply ids); slug logins that only differ from a verified login by
   separators or case map to the verified login
4. fuzzy name match against profile names and verified identities
5. the identity's own slug, email local part, or "unknown"

The mapping only depends on the inputs given to reconcile(), so repeated runs over the
same data produce the same logins.
"""
import logging
import re
from typing import Dict, Iterable, List, Optional, Set

from normalize.models import Author, RawData, UserProfile
from normalize.util import noreply_login, normalize_for_comparison, slugify_login

logger = logging.getLogger(__name__)

_NOREPLY_ID = re.compile(r'^(\d+)(?:\+[^@]*)?@users\.noreply\.github\.com$', re.IGNORECASE)

UNKNOWN_LOGIN = 'unknown'


class UserAlias:
    """Manual override: every listed email or name belongs to github_login."""

    def __init__(self, github_login: str, emails: Optional[List[str]] = None, names: Optional[List[str]] = None):
        self.github_login = github_login
        self.emails = list(emails or [])
        self.names = list(names or [])

    @classmethod
    def from_dict(cls, raw: Dict) -> 'UserAlias':
        return cls(github_login=raw.get('github_login') or raw.get('login', ''), emails=raw.get('emails'), names=raw.get('names'))


def _lower(value: Optional[str]) -> str:
    return (value or '').strip().lower()


def _noreply_id(email: str) -> Optional[int]:
    m = _NOREPLY_ID.match((email or '').strip())
    return int(m.group(1)) if m else None


class IdentityReconciler:
    def __init__(self, aliases: Optional[List[UserAlias]] = None, profiles: Optional[Iterable[UserProfile]] = None, platform_authors: Optional[Iterable[Author]] = None):
        self._alias_by_email: Dict[str, str] = {}
        self._alias_by_name: Dict[str, str] = {}
        self._alias_by_login: Dict[str, str] = {}
        for alias in aliases or []:
            if not alias.github_login:
                continue
            self._alias_by_login.setdefault(_lower(alias.github_login), alias.github_login)
            for email in alias.emails:
                self._alias_by_email.setdefault(_lower(email), alias.github_login)
            for name in alias.names:
                self._alias_by_name.setdefault(_lower(name), alias.github_login)

        self._profiles: Dict[str, UserProfile] = {}
        self._profile_by_email: Dict[str, str] = {}
        # verified logins: lowercase -> original case
        self._verified: Dict[str, str] = {}
        self._id_to_login: Dict[int, str] = {}
        self._known_names: Dict[str, str] = {}

        for profile in sorted(profiles or [], key=lambda p: p.login):
            if not profile.login:
                continue
            self._profiles[profile.login.lower()] = profile
            self._verified.setdefault(profile.login.lower(), profile.login)
            if profile.email:
                self._profile_by_email.setdefault(_lower(profile.email), profile.login)
            if profile.id:
                self._id_to_login.setdefault(profile.id, profile.login)

        for author in platform_authors or []:
            if not author.login:
                continue
            self._verified.setdefault(author.login.lower(), author.login)
            if author.id:
                self._id_to_login.setdefault(author.id, author.login)
            if author.name:
                self._known_names.setdefault(author.login.lower(), author.name)

        self._normalized_verified: Dict[str, str] = {}
        for lower in sorted(self._verified):
            self._normalized_verified.setdefault(normalize_for_comparison(lower), self._verified[lower])

        self._email_logins: Dict[str, str] = {}

    def learn_emails(self, authors: Iterable[Author]):
        """Remember which login each email resolved to, so identities sharing that email agree."""
        candidates: Dict[str, Set[str]] = {}
        for author in authors:
            email = _lower(author.email)
            if not email:
                continue
            login = self._resolve(author)
            if login:
                candidates.setdefault(email, set()).add(login)
        self._email_logins = {email: sorted(logins)[0] for email, logins in candidates.items()}

    def _verified_login(self, login: str) -> str:
        return self._verified.get(login.lower(), '')

    def _alias(self, author: Author) -> str:
        if author.email and _lower(author.email) in self._alias_by_email:
            return self._alias_by_email[_lower(author.email)]
        if author.name and _lower(author.name) in self._alias_by_name:
            return self._alias_by_name[_lower(author.name)]
        if author.login and _lower(author.login) in self._alias_by_login:
            return self._alias_by_login[_lower(author.login)]
        return ''

    def _platform_login(self, author: Author) -> str:
        noreply_id = _noreply_id(author.email)
        if noreply_id is not None and noreply_id in self._id_to_login:
            return self._id_to_login[noreply_id]
        if author.id and author.id in self._id_to_login:
            return self._id_to_login[author.id]

        from_email = noreply_login(author.email)
        if from_email:
            return self._verified_login(from_email) or from_email
        if not author.login:
            return ''
        verified = self._verified_login(author.login)
        if verified:
            return verified
        normalized = self._normalized_verified.get(normalize_for_comparison(author.login))
        if normalized:
            return normalized
        if author.id is not None:
            # platform record for someone outside the verified set
            return author.login
        return ''

    def _fuzzy_name(self, author: Author) -> str:
        wanted = normalize_for_comparison(author.name)
        if not wanted:
            return ''
        for lower in sorted(set(self._profiles) | set(self._verified)):
            profile = self._profiles.get(lower)
            names = [lower, self._known_names.get(lower, '')]
            if profile is not None:
                names.append(profile.name)
            if any(n and normalize_for_comparison(n) == wanted for n in names):
                return profile.login if profile is not None else self._verified[lower]
        return ''

    def _resolve(self, author: Author) -> str:
        alias = self._alias(author)
        if alias:
            return alias
        if author.email and _lower(author.email) in self._profile_by_email:
            return self._profile_by_email[_lower(author.email)]
        return self._platform_login(author) or self._fuzzy_name(author)

    def canonical_login(self, author: Optional[Author]) -> str:
        if author is None:
            return UNKNOWN_LOGIN
        login = self._resolve(author)
        if login:
            return login
        email = _lower(author.email)
        if email in self._email_logins:
            return self._email_logins[email]
        if author.login:
            return author.login
        slug = slugify_login(author.name)
        if slug:
            return slug
        if '@' in email:
            return email.split('@', 1)[0]
        return UNKNOWN_LOGIN

    def profile_for(self, login: str) -> Optional[UserProfile]:
        """Verified profile data (name, avatar) for a canonical login, if any source provided it."""
        return self._profiles.get((login or '').lower())

    def canonical_author(self, author: Optional[Author]) -> Optional[Author]:
        if author is None:
            return None
        login = self.canonical_login(author)
        profile = self.profile_for(login)
        changes = {'login': login}
        if profile is not None:
            if profile.avatar_url and not author.avatar_url:
                changes['avatar_url'] = profile.avatar_url
            if profile.name and not author.name:
                changes['name'] = profile.name
        return author.replace(**changes)

    def apply(self, raw: RawData) -> RawData:
        """Return a copy of raw whose authors carry canonical logins."""
        ca = self.canonical_author
        return RawData(
            commits=[c.replace(author=ca(c.author), committer=ca(c.committer)) for c in raw.commits],
            pull_requests=[pr.replace(author=ca(pr.author), reviews=[r.replace(author=ca(r.author)) for r in pr.reviews]) for pr in raw.pull_requests],
            reviews=[r.replace(author=ca(r.author)) for r in raw.reviews],
            issues=[i.replace(author=ca(i.author), closed_by=ca(i.closed_by)) for i in raw.issues],
            issue_comments=[c.replace(author=ca(c.author)) for c in raw.issue_comments],
        )


def reconcile(commits, pull_requests, reviews, user_profiles=None, aliases=None, issues=None, issue_comments=None) -> IdentityReconciler:
    """Build a reconciler from the identities seen in one run."""
    platform_authors: List[Author] = []
    for pr in pull_requests or []:
        platform_authors.append(pr.author)
    for review in reviews or []:
        platform_authors.append(review.author)
    for issue in issues or []:
        platform_authors.append(issue.author)
        if issue.closed_by is not None:
            platform_authors.append(issue.closed_by)
    for comment in issue_comments or []:
        platform_authors.append(comment.author)

    profiles = user_profiles.values() if isinstance(user_profiles, dict) else (user_profiles or [])
    reconciler = IdentityReconciler(aliases=aliases, profiles=profiles, platform_authors=platform_authors)

    git_authors: List[Author] = []
    for commit in commits or []:
        git_authors.append(commit.author)
        if commit.committer is not None:
            git_authors.append(commit.committer)
    reconciler.learn_emails(git_authors)
    logger.debug("identity reconciler built from %d profiles, %d platform identities", len(profiles), len(platform_authors))
    return reconciler


def reconcile_raw_data(raw: RawData, user_profiles=None, aliases=None) -> IdentityReconciler:
    return reconcile(raw.commits, raw.pull_requests, raw.reviews, user_profiles, aliases, issues=raw.issues, issue_comments=raw.issue_comments)


__all__ = ["UserAlias", "IdentityReconciler", "reconcile", "reconcile_raw_data", "UNKNOWN_LOGIN"]
