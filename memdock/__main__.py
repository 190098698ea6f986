"""
Entry point for python -m memdock
"""
from memdock.cli import main

if __name__ == '__main__':
    main()
