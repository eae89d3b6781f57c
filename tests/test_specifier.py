import pytest

from ghatoken import ParseError, RepoTarget, api_url_for_enterprise, parse_specifier


@pytest.mark.parametrize("specifier, expected", [
    ("https://github.com/dayflower/ghatoken.git", RepoTarget(None, "dayflower", "ghatoken")),
    ("https://github.com/dayflower/ghatoken", RepoTarget(None, "dayflower", "ghatoken")),
    ("git@github.com:dayflower/ghatoken.git", RepoTarget(None, "dayflower", "ghatoken")),
    ("dayflower/ghatoken.git", RepoTarget(None, "dayflower", "ghatoken")),
    ("dayflower/ghatoken", RepoTarget(None, "dayflower", "ghatoken")),
    ("https://github.com/dayflower", RepoTarget(None, "dayflower", None)),
    ("git@github.com:dayflower", RepoTarget(None, "dayflower", None)),
    ("dayflower", RepoTarget(None, "dayflower", None)),
    ("https://enterprise.example.net/dayflower/ghatoken.git",
     RepoTarget("enterprise.example.net", "dayflower", "ghatoken")),
    ("https://enterprise.example.net/dayflower/ghatoken",
     RepoTarget("enterprise.example.net", "dayflower", "ghatoken")),
    ("git@enterprise.example.net:dayflower/ghatoken.git",
     RepoTarget("enterprise.example.net", "dayflower", "ghatoken")),
    ("https://enterprise.example.net/dayflower", RepoTarget("enterprise.example.net", "dayflower", None)),
    ("git@enterprise.example.net:dayflower", RepoTarget("enterprise.example.net", "dayflower", None)),
])
def test_supported_specifiers(specifier, expected):
    assert parse_specifier(specifier) == expected


def test_empty_second_segment_means_owner_only():
    assert parse_specifier("owner/") == RepoTarget(None, "owner", None)


def test_trailing_slash_after_repo_is_accepted():
    assert parse_specifier("owner/repo/") == RepoTarget(None, "owner", "repo")


def test_only_one_git_suffix_is_stripped():
    assert parse_specifier("owner/repo.git.git").repo == "repo.git"


def test_scp_host_without_user():
    assert parse_specifier("enterprise.example.net:owner/repo") == \
        RepoTarget("enterprise.example.net", "owner", "repo")


def test_scp_host_uses_part_after_last_at():
    assert parse_specifier("a@b@ghe.example.com:owner").enterprise_host == "ghe.example.com"


def test_scp_github_dot_com_is_not_enterprise():
    assert parse_specifier("github.com:owner/repo").enterprise_host is None


@pytest.mark.parametrize("specifier", [
    "",
    "owner/repo/extra",
    "https://github.com/owner/repo/extra",
    "git@github.com:owner/repo/extra",
    "/repo",
    "https://github.com",
    "https://github.com/",
    "git@github.com:",
    "a:b:c",
    "https://[::1/owner",
])
def test_malformed_specifiers(specifier):
    with pytest.raises(ParseError):
        parse_specifier(specifier)


@pytest.mark.parametrize("specifier", [
    "dayflower/ghatoken.git",
    "https://enterprise.example.net/dayflower/ghatoken",
    "git@github.com:dayflower",
])
def test_owner_and_repo_round_trip(specifier):
    target = parse_specifier(specifier)
    rebuilt = target.owner if target.repo is None else f"{target.owner}/{target.repo}"
    again = parse_specifier(rebuilt)
    assert (again.owner, again.repo) == (target.owner, target.repo)


def test_api_url_for_enterprise():
    assert api_url_for_enterprise("enterprise.example.net") == "https://enterprise.example.net/api/v3"
