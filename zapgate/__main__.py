from zapgate.main import main

main()
