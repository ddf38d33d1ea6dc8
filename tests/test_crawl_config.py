from slowcrawl.workflows.crawl_config import DEFAULT_USER_AGENT, CrawlConfig


def test_from_env_maps_fields_one_by_one():
    env = {
        "SLOWCRAWL_IGNORE_ROBOTS": "yes",
        "SLOWCRAWL_MAX_DELAY_MILLIS": "1500",
        "SLOWCRAWL_WARC_DIGEST_ALGORITHM": "SHA256",
        "SLOWCRAWL_WARC_MAX_LENGTH_BYTES": "1048576",
        "SLOWCRAWL_DEDUPE_SERVER": "0",
        "SLOWCRAWL_DEDUPE_DIGEST": "false",
        "SLOWCRAWL_USER_AGENT": "testbot/1.0",
        "SLOWCRAWL_MAX_ROBOTS_BYTES": "1024",
        "SLOWCRAWL_SCRIPT_DETERMINISM": "off",
        "SLOWCRAWL_PAGE_LOAD_TIMEOUT": "2.5",
    }
    config = CrawlConfig.from_env(env)
    assert config.ignore_robots is True
    assert config.max_delay_millis == 1500
    assert config.warc_digest_algorithm == "sha256"
    assert config.warc_max_length_bytes == 1048576
    assert config.dedupe_server is False
    assert config.dedupe_digest is False
    assert config.user_agent == "testbot/1.0"
    assert config.max_robots_bytes == 1024
    assert config.script_determinism is False
    assert config.page_load_timeout == 2.5


def test_from_env_falls_back_on_malformed_values():
    config = CrawlConfig.from_env({"SLOWCRAWL_MAX_DEPTH": "deep", "SLOWCRAWL_USER_AGENT": "  ", "SLOWCRAWL_BROWSER": ""})
    defaults = CrawlConfig()
    assert config.max_depth == defaults.max_depth
    assert config.user_agent == DEFAULT_USER_AGENT
    assert config.browser_enabled is True


def test_compression_follows_the_file_suffix():
    assert CrawlConfig(warc_gzip=False, warc_filename="x/{seqno}.warc.gz").warc_compressed
    assert not CrawlConfig(warc_gzip=False, warc_filename="x/{seqno}.warc").warc_compressed
