from svcguard.main import main

main()
