"""HTML pages rendered during the browser leg of the OAuth flow."""

from __future__ import annotations

import html

ERROR_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>Authentication Error - TapKit</title>
    <style>
        body {{ font-family: system-ui, -apple-system, sans-serif; padding: 40px; text-align: center; }}
    </style>
</head>
<body>
    <h1>Authentication Error</h1>
    <p>{message}</p>
    <p>Please close this window and try again.</p>
</body>
</html>
"""

# Fragments never reach the server, so the page lifts the tokens into the
# query string and navigates back to this same callback URL.
FRAGMENT_EXTRACTION_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>TapKit - Completing Authentication</title>
    <style>
        body { font-family: system-ui, -apple-system, sans-serif; padding: 40px; text-align: center; }
    </style>
    <script>
        const hash = window.location.hash.substring(1);
        const fail = (message) => {
            document.body.innerHTML = '<h1>Authentication Error</h1><p>' + message + '</p>';
        };
        window.addEventListener('DOMContentLoaded', () => {
            if (!hash) {
                fail('No authentication data received. Please try again.');
                return;
            }
            const params = new URLSearchParams(hash);
            const accessToken = params.get('access_token');
            if (!accessToken) {
                fail('No access token received.');
                return;
            }
            const url = new URL(window.location.href);
            url.hash = '';
            url.searchParams.set('access_token', accessToken);
            const refreshToken = params.get('refresh_token');
            if (refreshToken) {
                url.searchParams.set('refresh_token', refreshToken);
            }
            window.location.replace(url.toString());
        });
    </script>
</head>
<body>
    <h1>Completing authentication...</h1>
    <p>Please wait while we complete the sign-in process.</p>
</body>
</html>
"""


def render_error_page(message: str) -> str:
    return ERROR_PAGE.format(message=html.escape(message))
