"""Run the helm-wrap command line tool with `python -m helm_wrap`."""

from .tool.helm_wrap import main

if __name__ == "__main__":
    main()
