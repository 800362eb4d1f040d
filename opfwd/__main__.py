from opfwd.cli import main

raise SystemExit(main())
