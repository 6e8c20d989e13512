#!/usr/bin/env python3

from abc import ABCMeta, abstractmethod
from typing import Any


class NotFoundError(RuntimeError):
    pass


class GitHubEndpoint(metaclass=ABCMeta):
    """
    The REST surface of GitHub.  Everything else we ask of GitHub goes
    through the gh CLI (see gitpr.shell.Shell.gh); this is only used
    where gh has no equivalent, or where we want to fan requests out.
    """

    def get(self, path: str, **kwargs: Any) -> Any:
        """
        Send a GET request to endpoint 'path'.

        Returns: parsed JSON response
        """
        return self.rest("get", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> Any:
        """
        Send a POST request to endpoint 'path'.

        Returns: parsed JSON response
        """
        return self.rest("post", path, **kwargs)

    def patch(self, path: str, **kwargs: Any) -> Any:
        """
        Send a PATCH request to endpoint 'path'.

        Returns: parsed JSON response
        """
        return self.rest("patch", path, **kwargs)

    @abstractmethod
    def rest(self, method: str, path: str, **kwargs: Any) -> Any:
        """
        Send a 'method' request to endpoint 'path'.

        Args:
            method: 'GET', 'POST', etc.
            path: relative URL path to access on endpoint
            **kwargs: dictionary of JSON payload to send

        Returns: parsed JSON response
        """
        pass

    async def arest(self, method: str, path: str, **kwargs: Any) -> Any:
        """
        Asynchronous version of rest().  The default just calls rest();
        endpoints that talk to the network should override it so that
        concurrent requests actually overlap.
        """
        return self.rest(method, path, **kwargs)
