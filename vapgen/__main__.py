from vapgen.operator import main

main()
