from arnold.cli import main

main()
