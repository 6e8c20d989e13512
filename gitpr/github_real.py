#!/usr/bin/env python3

import json
import logging
from typing import Any, Dict, Optional

import aiohttp
import requests

import gitpr
import gitpr.github


class RealGitHubEndpoint(gitpr.github.GitHubEndpoint):
    """
    A class representing a GitHub REST endpoint we can send requests to.
    """

    # The base URL of the REST endpoint to connect to (all REST requests
    # will be subpaths of this URL)
    rest_endpoint: str = "https://api.{github_url}"

    # The string OAuth token to authenticate with
    oauth_token: str

    # The URL of a proxy to use for these connections
    proxy: Optional[str]

    def __init__(self, oauth_token: str, github_url: str, proxy: Optional[str] = None):
        self.oauth_token = oauth_token
        self.proxy = proxy
        self.github_url = github_url

    def _url(self, path: str) -> str:
        if self.github_url == "github.com":
            base = self.rest_endpoint.format(github_url=self.github_url)
        else:
            # GitHub Enterprise serves the API under /api/v3
            base = "https://{}/api/v3".format(self.github_url)
        return base + "/" + path

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "git-pr/{}".format(gitpr.__version__),
            "Accept": "application/vnd.github.v3+json",
        }
        if self.oauth_token:
            headers["Authorization"] = "token " + self.oauth_token
        return headers

    def _check(self, url: str, status: int, r: Any) -> None:
        if status == 404:
            raise gitpr.github.NotFoundError(
                """\
GitHub raised a 404 error on the request for
{url}.
Usually, this doesn't actually mean the page doesn't exist; instead, it
usually means that your OAuth token does not have enough permissions.
Run "gh auth refresh -s repo" and try again.
""".format(
                    url=url
                )
            )
        if status >= 400:
            raise RuntimeError(json.dumps(r, indent=1))

    def rest(self, method: str, path: str, **kwargs: Any) -> Any:
        if self.proxy:
            proxies = {"http": self.proxy, "https": self.proxy}
        else:
            proxies = {}

        url = self._url(path)
        logging.debug("# {} {}".format(method, url))
        logging.debug("Request body:\n{}".format(json.dumps(kwargs, indent=1)))

        resp: requests.Response = getattr(requests, method)(
            url, json=kwargs, headers=self._headers(), proxies=proxies
        )

        logging.debug("Response status: {}".format(resp.status_code))

        try:
            r = resp.json()
        except ValueError:
            logging.debug("Response body:\n{}".format(resp.text))
            raise
        else:
            logging.debug("Response JSON:\n{}".format(json.dumps(r, indent=1)))

        self._check(url, resp.status_code, r)
        return r

    async def arest(self, method: str, path: str, **kwargs: Any) -> Any:
        url = self._url(path)
        logging.debug("# {} {}".format(method, url))
        logging.debug("Request body:\n{}".format(json.dumps(kwargs, indent=1)))

        async with aiohttp.request(
            method.upper(),
            url,
            json=kwargs,
            headers=self._headers(),
            proxy=self.proxy,
        ) as resp:
            logging.debug("Response status: {}".format(resp.status))

            r_text = await resp.text()

            try:
                r = json.loads(r_text)
            except json.decoder.JSONDecodeError:
                logging.debug("Response body:\n{}".format(r_text))
                raise
            else:
                logging.debug("Response JSON:\n{}".format(json.dumps(r, indent=1)))

            self._check(url, resp.status, r)
            return r
