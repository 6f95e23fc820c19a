from llm_proxy.server import main

main()
