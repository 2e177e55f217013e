"""
Shared fixtures: real-time log lines captured from a CDN distribution.
"""

import pytest

SAMPLE_HEADERS = (
    "User-Agent:vscode-restclient%0A"
    "X-Api-Key:pfCCh7ygOr8Gwv8BoGWHG3NO54Csd4aZ6tz1wHBx%0A"
    "Accept-Encoding:gzip,%20deflate,%20br%0A"
    "Host:d3o60fb1dwgq5k.cloudfront.net%0A"
    "Cloudfront-Is-Desktop-Viewer:true%0A"
    "Cloudfront-Viewer-Country:US%0A"
    "Cloudfront-Viewer-Country-Name:United%20States%0A"
    "Cloudfront-Viewer-City:Corte%20Madera%0A"
    "Cloudfront-Viewer-Time-Zone:America/Los_Angeles%0A"
)

SAMPLE_HEADER_NAMES = (
    "User-Agent%0AX-Api-Key%0AAccept-Encoding%0AHost%0ACloudfront-Is-Desktop-Viewer%0A"
    "Cloudfront-Viewer-Country%0ACloudfront-Viewer-Country-Name%0ACloudfront-Viewer-City%0A"
    "Cloudfront-Viewer-Time-Zone%0A"
)

SAMPLE_API_KEY = "pfCCh7ygOr8Gwv8BoGWHG3NO54Csd4aZ6tz1wHBx"


def build_line(**overrides) -> str:
    """Build a 44-field GET line, replacing tokens by field name."""
    tokens = {
        "timestamp": "1759687234.191",
        "c_ip": "32.142.164.10",
        "s_ip": "65.8.177.136",
        "time_to_first_byte": "0.253",
        "sc_status": "200",
        "sc_bytes": "783",
        "cs_method": "GET",
        "cs_protocol": "https",
        "cs_host": "d3o60fb1dwgq5k.cloudfront.net",
        "cs_uri_stem": "/example",
        "cs_bytes": "201",
        "x_edge_location": "SFO53-P9",
        "x_edge_request_id": "HoIW-MaV1Qu7J5kwqnAYBNlsg4iI2MBYb5OXBfykwRAZpAqHmdWtQA==",
        "x_host_header": "d3o60fb1dwgq5k.cloudfront.net",
        "time_taken": "0.253",
        "cs_protocol_version": "HTTP/1.1",
        "c_ip_version": "IPv4",
        "cs_user_agent": "vscode-restclient",
        "cs_referer": "-",
        "cs_cookie": "-",
        "cs_uri_query": "-",
        "x_edge_response_result_type": "Miss",
        "x_forwarded_for": "-",
        "ssl_protocol": "TLSv1.3",
        "ssl_cipher": "TLS_AES_128_GCM_SHA256",
        "x_edge_result_type": "Miss",
        "fle_encrypted_fields": "-",
        "fle_status": "-",
        "sc_content_type": "application/json",
        "sc_content_len": "102",
        "sc_range_start": "-",
        "sc_range_end": "-",
        "c_port": "63051",
        "x_edge_detailed_result_type": "Miss",
        "c_country": "US",
        "cs_accept_encoding": "gzip,%20deflate,%20br",
        "cs_accept": "-",
        "cache_behavior_path_pattern": "*",
        "cs_headers": SAMPLE_HEADERS,
        "cs_header_names": SAMPLE_HEADER_NAMES,
        "cs_headers_count": "26",
        "origin_fbl": "0.232",
        "origin_lbl": "0.232",
        "asn": "7018",
    }
    unknown = set(overrides) - set(tokens)
    if unknown:
        raise KeyError(f"Unknown fields: {unknown}")
    tokens.update(overrides)
    return "\t".join(tokens.values())


SAMPLE_LINE = build_line()

POST_LINE = build_line(
    timestamp="1759687169.596",
    time_to_first_byte="0.597",
    sc_bytes="881",
    cs_method="POST",
    cs_uri_stem="/data",
    cs_bytes="345",
    x_edge_request_id="e84rly0hAmwHfcOz0WdbcRQGN8iPYMjLmNa9gpmGd39dLsOlcxKINg==",
    time_taken="0.615",
    sc_content_len="200",
    c_port="62915",
    cs_headers="User-Agent:vscode-restclient%0A",
    cs_header_names="User-Agent%0A",
    cs_headers_count="28",
    origin_fbl="0.542",
    origin_lbl="0.542",
)


@pytest.fixture
def sample_line() -> str:
    return SAMPLE_LINE


@pytest.fixture
def post_line() -> str:
    return POST_LINE


@pytest.fixture
def line_builder():
    return build_line
