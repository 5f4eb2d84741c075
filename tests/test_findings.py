from adapterforge.discovery.findings import DiscoveryState, count_findings, normalize_category


def test_save_finding_is_idempotent():
    state = DiscoveryState()
    state.save_finding("auth", "OAuth2 client credentials")
    key, total = state.save_finding("auth", "OAuth2 client credentials")

    assert key == "auth"
    assert total == 1
    assert state.findings == {"auth": ["OAuth2 client credentials"]}


def test_categories_are_normalized():
    assert normalize_category(" Base URLs ") == "base_urls"
    assert normalize_category("Auth/OAuth-2") == "auth_oauth_2"

    state = DiscoveryState()
    state.save_finding("Base URLs", "https://api.example.com")
    state.save_finding("base urls", "https://sandbox.example.com")
    assert state.findings["base_urls"] == ["https://api.example.com", "https://sandbox.example.com"]


def test_source_urls_ignore_fragments():
    state = DiscoveryState()
    state.register_source_url("https://docs.example.com/auth#tokens")
    state.register_source_url("https://docs.example.com/auth#scopes")
    state.register_source_url("https://docs.example.com/auth")
    state.register_source_url("   ")
    state.register_source_url(None)

    assert state.source_urls == {"https://docs.example.com/auth"}


def test_result_snapshot():
    state = DiscoveryState()
    state.register_source_url("https://b.example.com/")
    state.register_source_url("https://a.example.com/")
    state.add_note("Discovery timed out")
    state.register_tool_call()
    state.pages_visited = 3

    result = state.result()
    state.save_finding("notes", "later note")

    assert result.source_urls == ["https://a.example.com/", "https://b.example.com/"]
    assert result.findings == {"notes": ["Discovery timed out"]}
    assert result.tool_calls == 1
    assert result.pages_visited == 3
    assert count_findings(state.findings) == 2
