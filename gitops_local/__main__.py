"""Run the gitops-local command line tool with `python -m gitops_local`."""

from gitops_local.tool.gitops_local import main

main()
