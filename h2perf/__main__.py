from h2perf.cli import main

main()
