#!/usr/bin/env python3
"""
Main execution module for the Box migration tool
"""

from box_migrator.cli.commands import main

if __name__ == "__main__":
    main()
