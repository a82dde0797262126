from kdbximport.cli import main

raise SystemExit(main())
