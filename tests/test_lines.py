import unittest

from normalize.lines import (
    LineType,
    analyze_patch,
    classify,
    is_commented_out_code,
    is_doc_comment,
    is_documentation_file,
    is_rename_or_move,
    is_test_file,
)


class TestClassify(unittest.TestCase):
    def test_whitespace(self):
        for line in ('', '   ', '\t\t'):
            self.assertIs(classify(line), LineType.WHITESPACE)

    def test_comment_prefixes(self):
        for line in ('// hi', '  # note', '/* start', ' * middle', '*/', '<!-- html -->', '-- sql', '; lisp', '"""doc', '///  rust doc'):
            self.assertIs(classify(line), LineType.COMMENT, line)

    def test_pointer_dereference_is_code(self):
        self.assertIs(classify('*ptr = x;'), LineType.MEANINGFUL)

    def test_meaningful(self):
        self.assertIs(classify('x := 5'), LineType.MEANINGFUL)
        self.assertIs(classify('return a + b'), LineType.MEANINGFUL)

    def test_every_line_gets_one_type(self):
        for line in ('', 'a', '#', '*', '/', '-->', 'if x:', 'été'):
            self.assertIn(classify(line), list(LineType))


class TestCommentFlavours(unittest.TestCase):
    def test_doc_comments(self):
        self.assertTrue(is_doc_comment('/// returns the sum'))
        self.assertTrue(is_doc_comment('/** Javadoc */'))
        self.assertTrue(is_doc_comment(' * @param x value'))
        self.assertFalse(is_doc_comment('// plain comment'))

    def test_commented_out_code(self):
        self.assertTrue(is_commented_out_code('// x := 5'))
        self.assertTrue(is_commented_out_code('# return value'))
        self.assertTrue(is_commented_out_code('// foo(bar);'))
        self.assertFalse(is_commented_out_code('// just some prose here'))
        self.assertFalse(is_commented_out_code('//'))


class TestAnalyzePatch(unittest.TestCase):
    def test_single_parent_patch(self):
        patch = "@@ -1,3 +1,5 @@\n context\n+// comment\n+x := 5"
        stats = analyze_patch(patch)
        self.assertEqual(stats.total_additions, 2)
        self.assertEqual(stats.comment_additions, 1)
        self.assertEqual(stats.meaningful_additions, 1)
        self.assertEqual(stats.total_deletions, 0)
        whitespace = stats.total_additions - stats.meaningful_additions - stats.comment_additions
        self.assertEqual(whitespace, 0)

    def test_headers_ignored(self):
        patch = "--- a/x.go\n+++ b/x.go\n@@ -1 +1 @@\n-old()\n+new()\n+\n"
        stats = analyze_patch(patch)
        self.assertEqual(stats.total_additions, 2)
        self.assertEqual(stats.total_deletions, 1)
        self.assertEqual(stats.meaningful_additions, 1)
        self.assertEqual(stats.meaningful_deletions, 1)

    def test_counts_never_double(self):
        patch = "+// a\n+\n+code()\n-# b\n-\n"
        stats = analyze_patch(patch)
        self.assertLessEqual(stats.meaningful_additions + stats.comment_additions, stats.total_additions)
        self.assertLessEqual(stats.meaningful_deletions + stats.comment_deletions, stats.total_deletions)

    def test_empty_patch(self):
        self.assertEqual(analyze_patch('').total_additions, 0)
        self.assertEqual(analyze_patch(None).total_deletions, 0)


class TestFileKinds(unittest.TestCase):
    def test_documentation_files(self):
        self.assertTrue(is_documentation_file('README.md'))
        self.assertTrue(is_documentation_file('docs/guide/setup.html'))
        self.assertFalse(is_documentation_file('src/main.go'))

    def test_test_files(self):
        self.assertTrue(is_test_file('pkg/server_test.go'))
        self.assertTrue(is_test_file('src/app.spec.ts'))
        self.assertTrue(is_test_file('test_models.py'))
        self.assertFalse(is_test_file('src/server.go'))

    def test_rename(self):
        self.assertTrue(is_rename_or_move('a/x.go', 'b/x.go'))
        self.assertFalse(is_rename_or_move('a/x.go', 'a/x.go'))
        self.assertFalse(is_rename_or_move('', 'a/x.go'))


if __name__ == '__main__':
    unittest.main()
