import pytest
from aiohttp.test_utils import make_mocked_request

from config import ProxyConfig
from services.manifest_rewriter import (
    ManifestRewriter, PlaylistLine, build_proxy_url, is_playlist, manifest_base_path,
    resolve_proxy_base, resolve_reference,
)

MANIFEST_URL = "https://cdn.example.com/videos/abc/playlist.m3u8"
PROXY_BASE = "https://proxy.example.com"
REFERER = "https://megacloud.tv"
ENCODED_REFERER = "https%3A%2F%2Fmegacloud.tv"


def rewrite(content, manifest_url=MANIFEST_URL, referer=REFERER):
    return ManifestRewriter.rewrite_manifest_urls(content, manifest_url, PROXY_BASE, referer)


def test_relative_segment():
    assert rewrite("segment001.ts") == (
        "https://proxy.example.com/api/proxy"
        "?url=https%3A%2F%2Fcdn.example.com%2Fvideos%2Fabc%2Fsegment001.ts"
        f"&referer={ENCODED_REFERER}"
    )


def test_absolute_segment_kept_absolute():
    assert rewrite("https://other.example.net/x/seg.ts") == (
        "https://proxy.example.com/api/proxy"
        "?url=https%3A%2F%2Fother.example.net%2Fx%2Fseg.ts"
        f"&referer={ENCODED_REFERER}"
    )


@pytest.mark.parametrize('reference,expected', [
    ("sub/seg.ts", "https://cdn.example.com/videos/abc/sub/seg.ts"),
    ("../other/seg.ts", "https://cdn.example.com/videos/other/seg.ts"),
    ("/root.ts", "https://cdn.example.com/root.ts"),
    ("//edge.example.com/seg.ts", "https://edge.example.com/seg.ts"),
    ("seg.ts?token=a/b", "https://cdn.example.com/videos/abc/seg.ts?token=a/b"),
])
def test_resolution_against_manifest_directory(reference, expected):
    assert resolve_reference(reference, manifest_base_path(MANIFEST_URL)) == expected


def test_key_directive_only_uri_rewritten():
    line = '#EXT-X-KEY:METHOD=AES-128,URI="key.bin",IV=0xABCDEF'
    expected_uri = build_proxy_url(PROXY_BASE, "https://cdn.example.com/videos/abc/key.bin", REFERER)
    assert rewrite(line) == f'#EXT-X-KEY:METHOD=AES-128,URI="{expected_uri}",IV=0xABCDEF'


def test_map_directive_rewritten():
    line = '#EXT-X-MAP:URI="init.mp4",BYTERANGE="720@0"'
    expected_uri = build_proxy_url(PROXY_BASE, "https://cdn.example.com/videos/abc/init.mp4", REFERER)
    assert rewrite(line) == f'#EXT-X-MAP:URI="{expected_uri}",BYTERANGE="720@0"'


def test_media_directive_rewritten():
    line = '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aac",NAME="English",URI="audio/en.m3u8"'
    rewritten = rewrite(line)
    assert rewritten.startswith('#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aac",NAME="English",URI="https://proxy.example.com/api/proxy?url=')
    assert "audio%2Fen.m3u8" in rewritten


def test_plain_directives_and_blank_lines_untouched():
    content = "#EXTM3U\n#EXT-X-VERSION:3\n\n#EXTINF:10.0,\n#EXT-X-ENDLIST\n"
    assert rewrite(content) == content


def test_line_order_and_trailing_newline_preserved():
    content = "#EXTM3U\n#EXTINF:4,\na.ts\n#EXTINF:4,\nb.ts\n"
    lines = rewrite(content).split('\n')
    assert len(lines) == 6
    assert lines[0] == "#EXTM3U"
    assert "a.ts" in lines[2]
    assert "b.ts" in lines[4]
    assert lines[5] == ""


def test_crlf_lines_trimmed():
    rewritten = rewrite("#EXTM3U\r\nseg.ts\r\n")
    assert "\r" not in rewritten
    assert rewritten.split('\n')[0] == "#EXTM3U"


def test_referer_embedded_in_every_link():
    referer = "https://player.example.org/watch?v=1&t=2"
    rewritten = rewrite('#EXT-X-KEY:METHOD=AES-128,URI="k.bin"\na.ts\nb.ts', referer=referer)
    assert rewritten.count("&referer=https%3A%2F%2Fplayer.example.org%2Fwatch%3Fv%3D1%26t%3D2") == 3


def test_rewrite_is_deterministic():
    content = '#EXTM3U\n#EXT-X-KEY:METHOD=AES-128,URI="key.bin"\n#EXTINF:10,\nsegment001.ts\n'
    assert rewrite(content) == rewrite(content)


def test_base_path_ignores_query_string():
    url = "https://cdn.example.com/videos/abc/playlist.m3u8?token=x/y/z"
    assert manifest_base_path(url) == "https://cdn.example.com/videos/abc/"
    assert "cdn.example.com%2Fvideos%2Fabc%2Fseg.ts&" in rewrite("seg.ts", manifest_url=url)


def test_unresolvable_reference_left_unchanged():
    assert rewrite("http://[::1/broken.ts") == "http://[::1/broken.ts"


def test_unresolvable_directive_left_unchanged():
    line = '#EXT-X-KEY:METHOD=AES-128,URI="http://[::1/key"'
    assert rewrite(line) == line


def test_non_http_scheme_left_unchanged():
    line = '#EXT-X-KEY:METHOD=SAMPLE-AES,URI="skd://key-id-123",KEYFORMAT="com.apple.streamingkeydelivery"'
    assert rewrite(line) == line


def test_empty_uri_left_unchanged():
    line = '#EXT-X-KEY:METHOD=NONE,URI=""'
    assert rewrite(line) == line


def test_playlist_line_classification():
    assert PlaylistLine("").kind == PlaylistLine.BLANK
    assert PlaylistLine("   ").kind == PlaylistLine.BLANK
    assert PlaylistLine("#EXTINF:10,").kind == PlaylistLine.DIRECTIVE
    assert PlaylistLine('#EXT-X-MAP:URI="init.mp4"').kind == PlaylistLine.DIRECTIVE_WITH_URI
    assert PlaylistLine("  seg.ts ").kind == PlaylistLine.MEDIA
    assert PlaylistLine("  seg.ts ").text == "seg.ts"


@pytest.mark.parametrize('content_type,url,expected', [
    ("application/vnd.apple.mpegurl", "https://cdn.example.com/a", True),
    ("application/x-mpegURL", "https://cdn.example.com/a", True),
    ("audio/mpegurl; charset=utf-8", "https://cdn.example.com/a", True),
    ("", "https://cdn.example.com/a/index.m3u8", True),
    ("text/plain", "https://cdn.example.com/a/index.M3U8?sig=1", True),
    ("application/dash+xml", "https://cdn.example.com/a/manifest.mpd", False),
    ("video/mp2t", "https://cdn.example.com/a/seg.ts", False),
])
def test_is_playlist(content_type, url, expected):
    assert is_playlist(content_type, url) is expected


def test_proxy_base_from_host():
    request = make_mocked_request('GET', '/api/proxy', headers={'Host': 'proxy.local:8080'})
    assert resolve_proxy_base(request, ProxyConfig()) == "http://proxy.local:8080"


def test_proxy_base_from_forwarded_headers():
    request = make_mocked_request('GET', '/api/proxy', headers={
        'Host': 'internal:7860',
        'X-Forwarded-Proto': 'https, http',
        'X-Forwarded-Host': 'public.example.com, lb.internal',
    })
    assert resolve_proxy_base(request, ProxyConfig()) == "https://public.example.com"


def test_proxy_base_override_wins():
    request = make_mocked_request('GET', '/api/proxy', headers={'X-Forwarded-Host': 'public.example.com'})
    config = ProxyConfig(proxy_base_url="https://media.example.com/")
    assert resolve_proxy_base(request, config) == "https://media.example.com"


def test_proxy_base_forwarded_strategy():
    request = make_mocked_request('GET', '/api/proxy', headers={'X-Forwarded-Host': 'public.example.com'})
    config = ProxyConfig(proxy_base_url="https://media.example.com", base_url_strategy="forwarded")
    assert resolve_proxy_base(request, config) == "http://public.example.com"
