#!/usr/bin/env python3

from typing import NewType

# A bunch of commonly used type definitions.

# Actually, sometimes we smuggle revs in here (e.g., HEAD or
# origin/main).
# commit 3f72e04eeabcc7e77f127d3e7baf2f5ccdb148ee
GitCommitHash = NewType("GitCommitHash", str)

GitHubNumber = NewType("GitHubNumber", int)  # aka 1234 (as in #1234)

# Name of a branch on the remote, as recorded in a Remote-Ref trailer;
# aka alice/3f72e04e
RemoteRef = NewType("RemoteRef", str)
