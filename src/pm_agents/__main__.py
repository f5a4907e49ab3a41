"""
Entry point for running pm_agents as a module.

    python -m pm_agents
"""

from pm_agents.supervisor import main

if __name__ == "__main__":
    main()
