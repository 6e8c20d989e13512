#!/usr/bin/env python3

import gitpr.cli


if __name__ == "__main__":
    gitpr.cli.main()
