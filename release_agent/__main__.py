"""Run the release-agent command line tool with `python -m release_agent`."""

from release_agent.tool.release_agent import main

if __name__ == "__main__":
    main()
