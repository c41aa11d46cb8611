from calhub.cli import main

main()
