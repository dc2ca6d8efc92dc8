from authproxy.proxy import main

main()
