"""Run the flux-bootstrap command line tool with `python -m flux_bootstrap`."""

from flux_bootstrap.tool.flux_bootstrap import main

if __name__ == "__main__":
    main()
