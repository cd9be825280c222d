import sys

from story_node.cli import main

if __name__ == "__main__":
    sys.exit(main())
